"""Tests for cosine similarity and the vector index.

Author: Hay Hoffman
"""

import numpy as np
import pytest

from src.exceptions import DimensionMismatch, StoreIOError
from src.retrieval.vector_index import VectorIndex, cosine_similarity


class ConstantEmbedder:
    """Returns the same unit vector for every text."""

    def __call__(self, text: str) -> list[float]:
        return [0.6, 0.8, 0.0]


# =============================================================================
# Cosine similarity
# =============================================================================


class TestCosineSimilarity:
    """Tests for the module-level cosine_similarity."""

    @pytest.mark.parametrize("vector", [[1.0, 2.0, 3.0], [0.001, -5.0, 7.5], [3.0]])
    def test_self_similarity(self, vector):
        assert cosine_similarity(vector, vector) == pytest.approx(1.0)

    def test_zero_vector(self):
        assert cosine_similarity([1.0, 2.0], [0.0, 0.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [0.0, 0.0]) == 0.0

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_dimension_mismatch(self):
        with pytest.raises(DimensionMismatch) as exc_info:
            cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])
        assert (exc_info.value.expected, exc_info.value.actual) == (2, 3)


# =============================================================================
# Vector index
# =============================================================================


class TestVectorIndex:
    """Tests for VectorIndex search and persistence."""

    def test_identical_vectors_threshold_boundary(self, chunk_factory):
        """minSimilarity is an inclusive lower bound."""
        index = VectorIndex(embedding_fn=ConstantEmbedder())
        index.insert_batch([chunk_factory("a", "first"), chunk_factory("b", "second")])

        assert {r.chunk_id for r in index.find_similar("anything", 10, 0.99)} == {"a", "b"}
        assert index.find_similar("anything", 10, 1.01) == []

    def test_results_descending(self, embedder, java_chunks):
        index = VectorIndex(embedding_fn=embedder)
        index.insert_batch(java_chunks)

        results = index.find_similar("find user by name", max_results=5)

        similarities = [r.similarity for r in results]
        assert similarities == sorted(similarities, reverse=True)
        assert len(results) <= 5

    def test_exact_text_is_most_similar(self, embedder, java_chunks):
        index = VectorIndex(embedding_fn=embedder)
        index.insert_batch(java_chunks)
        target = java_chunks[2]

        results = index.find_similar(target.searchable_text, max_results=1)

        assert results[0].chunk_id == target.id
        assert results[0].similarity == pytest.approx(1.0)

    def test_find_similar_to_chunk_excludes_self(self, embedder, java_chunks):
        index = VectorIndex(embedding_fn=embedder)
        index.insert_batch(java_chunks)

        results = index.find_similar_to_chunk("svc_find", max_results=10)

        assert "svc_find" not in {r.chunk_id for r in results}
        assert results[0].chunk_id == "svc_save"

    def test_unknown_chunk_returns_empty(self, embedder):
        index = VectorIndex(embedding_fn=embedder)
        assert index.find_similar_to_chunk("missing") == []

    def test_empty_index(self, embedder):
        assert VectorIndex(embedding_fn=embedder).find_similar("query") == []

    def test_dimension_mismatch_on_insert(self, chunk_factory):
        index = VectorIndex(embedding_fn=ConstantEmbedder())
        index.insert(chunk_factory("a", "first"))

        with pytest.raises(DimensionMismatch):
            index.insert_embedded([chunk_factory("b", "second")], [np.ones(5)])
        assert index.size() == 1

    def test_dimension_mismatch_on_query(self, chunk_factory):
        index = VectorIndex(embedding_fn=ConstantEmbedder())
        index.insert(chunk_factory("a", "first"))

        with pytest.raises(DimensionMismatch):
            index.find_similar_to_vector([1.0, 0.0])

    def test_search_reads_chunks_from_its_generation(self, chunk_factory, monkeypatch):
        """A reader holding an older view gets that view's chunk, not a later overwrite."""
        index = VectorIndex(embedding_fn=ConstantEmbedder())
        index.insert(chunk_factory("a", "first"))
        stale = index._current_snapshot()

        index.insert_embedded([chunk_factory("a", "second")], [np.ones(3)])
        index.remove("a")
        monkeypatch.setattr(index, "_current_snapshot", lambda: stale)

        results = index.find_similar_to_vector(np.ones(3))

        assert [r.chunk.content for r in results] == ["first"]
        assert stale.chunks[0].content == "first"

    def test_remove_and_clear(self, embedder, java_chunks):
        index = VectorIndex(embedding_fn=embedder)
        index.insert_batch(java_chunks)

        assert index.remove("svc_find")
        assert not index.remove("svc_find")
        assert "svc_find" not in index
        index.clear()
        assert len(index) == 0

    def test_snapshot_round_trip(self, tmp_path, embedder, java_chunks):
        snapshot = tmp_path / "vectors.pkl"
        index = VectorIndex(embedding_fn=embedder, snapshot_path=snapshot)
        index.insert_batch(java_chunks)
        index.save_to_disk()

        reloaded = VectorIndex(embedding_fn=embedder, snapshot_path=snapshot)

        assert reloaded.size() == index.size()
        assert reloaded.dimension == index.dimension
        for chunk in java_chunks:
            assert reloaded.get_entry(chunk.id).vector == index.get_entry(chunk.id).vector
            assert reloaded.get_chunk(chunk.id) == chunk

    def test_missing_snapshot_is_cold_start(self, tmp_path, embedder):
        index = VectorIndex(embedding_fn=embedder, snapshot_path=tmp_path / "none.pkl")
        assert index.size() == 0

    def test_corrupt_snapshot(self, tmp_path, embedder):
        snapshot = tmp_path / "vectors.pkl"
        snapshot.write_bytes(b"\xffgarbage")

        with pytest.raises(StoreIOError):
            VectorIndex(embedding_fn=embedder, snapshot_path=snapshot)

    def test_ann_preselection_matches_exact(self, embedder, chunk_factory):
        """Above the threshold the HNSW path still finds the best match."""
        pytest.importorskip("faiss")
        chunks = [chunk_factory(f"c{i}", f"token{i} shared word{i % 7}") for i in range(40)]

        exact = VectorIndex(embedding_fn=embedder)
        exact.insert_batch(chunks)
        approximate = VectorIndex(embedding_fn=embedder, ann_threshold=10)
        approximate.insert_batch(chunks)

        query = chunks[17].searchable_text
        best = approximate.find_similar(query, 1)[0]
        assert best.similarity == pytest.approx(exact.find_similar(query, 1)[0].similarity)
        assert best.similarity == pytest.approx(1.0)
