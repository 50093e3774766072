"""Tests for chunk producers and the parallel indexing pipeline.

Author: Hay Hoffman
"""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from models.chunk import ChunkKind
from src.exceptions import DimensionMismatch
from src.retrieval.chunk_store import ChunkStore
from src.retrieval.code_graph import CodeGraph
from src.retrieval.indexing import CodeIndexer, JsonChunkProducer, should_exclude
from src.retrieval.lexical_index import LexicalIndex
from src.retrieval.vector_index import VectorIndex


# =============================================================================
# Test Fixtures
# =============================================================================


def write_json(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.fixture
def indexer(embedder) -> CodeIndexer:
    """In-memory indexer with every index configured."""
    return CodeIndexer(
        LexicalIndex(),
        VectorIndex(embedding_fn=embedder),
        CodeGraph(),
        ChunkStore(),
        workers=2,
    )


class BarrierEmbedder:
    """Holds every batch until ``parties`` batches are embedding at once."""

    def __init__(self, embedding_fn, parties: int):
        self.embedding_fn = embedding_fn
        self.barrier = threading.Barrier(parties, timeout=5)

    def __call__(self, text: str):
        return self.embedding_fn(text)

    def embed_batch(self, texts: list[str]):
        self.barrier.wait()
        return [self.embedding_fn(text) for text in texts]


class UpperCaseProducer:
    """Competing producer for *.chunks.json that wins on priority."""

    priority = 20

    def can_parse(self, path: Path) -> bool:
        return path.name.endswith(".chunks.json")

    def parse(self, path: Path):
        return JsonChunkProducer().parse(path)[:1]


# =============================================================================
# index_chunks
# =============================================================================


class TestIndexChunks:
    """Tests for batch indexing with a single commit."""

    def test_all_indices_populated(self, indexer, java_chunks):
        result = indexer.index_chunks(java_chunks)

        assert result.chunks_received == 5
        assert result.chunks_indexed == 5
        assert result.chunks_skipped == 0
        assert result.lexical_count == 5
        assert result.vector_count == 5
        assert result.persisted
        assert len(indexer.chunk_store) == 5
        assert len(indexer.graph) == 5

    def test_invalid_chunks_skipped_per_item(self, indexer, java_chunks, chunk_factory):
        empty = chunk_factory("empty", "placeholder").model_copy(update={"content": "   "})
        collision = chunk_factory("svc_find", "different body")

        result = indexer.index_chunks(java_chunks + [empty, collision])

        assert result.chunks_indexed == 5
        assert result.chunks_skipped == 2
        assert len(result.errors) == 2
        assert indexer.lexical_index.get_chunk("svc_find").content == java_chunks[0].content

    def test_reindex_same_batch_idempotent(self, indexer, java_chunks):
        indexer.index_chunks(java_chunks)
        result = indexer.index_chunks(java_chunks)

        assert result.lexical_count == 5
        assert result.vector_count == 5

    def test_collision_with_stored_chunk(self, indexer, java_chunks, chunk_factory):
        indexer.index_chunks(java_chunks)

        result = indexer.index_chunks([chunk_factory("dao_find", "rewritten body")])

        assert result.chunks_indexed == 0
        assert indexer.chunk_store.get("dao_find").content == java_chunks[2].content

    def test_dimension_mismatch_aborts_batch(self, embedder, java_chunks):
        lexical_index = LexicalIndex()
        indexer = CodeIndexer(lexical_index, VectorIndex(embedding_fn=embedder, dimension=3))

        with pytest.raises(DimensionMismatch):
            indexer.index_chunks(java_chunks)
        assert lexical_index.count() == 0
        assert len(indexer.chunk_store) == 0

    def test_without_vector_index(self, java_chunks):
        indexer = CodeIndexer(LexicalIndex())

        result = indexer.index_chunks(java_chunks)

        assert result.vector_count == 0
        assert result.lexical_count == 5

    def test_persisted_and_reloaded(self, tmp_path, embedder, java_chunks):
        chunks_file = tmp_path / "chunks.json"
        snapshot = tmp_path / "vectors.pkl"
        indexer = CodeIndexer(
            LexicalIndex(tmp_path / "lexical"),
            VectorIndex(embedding_fn=embedder, snapshot_path=snapshot),
            chunk_store_file=chunks_file,
        )

        assert indexer.index_chunks(java_chunks).persisted

        assert LexicalIndex(tmp_path / "lexical").count() == 5
        assert VectorIndex(embedding_fn=embedder, snapshot_path=snapshot).size() == 5
        assert len(ChunkStore(chunks_file)) == 5

    def test_concurrent_batches_with_same_id(self, embedder, chunk_factory):
        """Two batches racing on one id: one wins, the other reports a per-item collision."""
        vector_index = VectorIndex(embedding_fn=BarrierEmbedder(embedder, parties=2))
        indexer = CodeIndexer(LexicalIndex(), vector_index, CodeGraph(), workers=2)
        alpha = chunk_factory("X", "alpha version of the handler")
        beta = chunk_factory("X", "beta version of the handler")

        with ThreadPoolExecutor(max_workers=2) as executor:
            results = list(executor.map(lambda chunk: indexer.index_chunks([chunk]), [alpha, beta]))

        assert sorted(r.chunks_indexed for r in results) == [0, 1]
        loser = next(r for r in results if r.chunks_indexed == 0)
        assert any("collision" in error for error in loser.errors)

        stored = indexer.chunk_store.get("X").content
        assert indexer.lexical_index.get_chunk("X").content == stored
        assert vector_index.get_chunk("X").content == stored
        assert indexer.lexical_index.count() == vector_index.size() == 1

    def test_persistence_failure_reported(self, tmp_path, java_chunks):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        indexer = CodeIndexer(LexicalIndex(), chunk_store_file=blocker / "chunks.json")

        result = indexer.index_chunks(java_chunks)

        assert not result.persisted
        assert result.errors
        assert indexer.lexical_index.count() == 5


# =============================================================================
# Producers and directories
# =============================================================================


class TestProducers:
    """Tests for JsonChunkProducer and exclusion rules."""

    def test_json_producer(self, tmp_path):
        path = write_json(tmp_path / "Login.chunks.json", [
            {"content": "login validates credentials", "kind": "Method", "file_path": "Login.java"},
            {"id": "bad", "content": "", "kind": "METHOD"},
            {"id": "cfg", "content": "<action path=\"/login\"/>", "kind": "ConfigSection"},
        ])
        producer = JsonChunkProducer()

        chunks = producer.parse(path)

        assert producer.can_parse(path)
        assert not producer.can_parse(tmp_path / "Login.java")
        assert [c.kind for c in chunks] == [ChunkKind.METHOD, ChunkKind.CONFIG_SECTION]
        assert len(chunks[0].id) == 32
        assert chunks[1].id == "cfg"

    @pytest.mark.parametrize(
        "relative, excluded",
        [
            ("target/classes/A.chunks.json", True),
            ("module/build/out.chunks.json", True),
            ("lib/dep.jar", True),
            ("src/A.chunks.json", False),
        ],
    )
    def test_should_exclude(self, tmp_path, relative, excluded):
        patterns = ["target/*", "build/*", "*.jar"]
        assert should_exclude(tmp_path / relative, tmp_path, patterns) is excluded


class TestIndexDirectory:
    """Tests for walking a directory of chunk files."""

    def test_index_directory(self, tmp_path, indexer, java_chunks):
        write_json(tmp_path / "a.chunks.json", [c.model_dump(mode="json") for c in java_chunks[:3]])
        write_json(tmp_path / "web" / "b.chunks.json", {"chunks": [c.model_dump(mode="json") for c in java_chunks[3:]]})
        write_json(tmp_path / "target" / "c.chunks.json", [{"id": "x", "content": "ignored", "kind": "METHOD"}])
        (tmp_path / "broken.chunks.json").write_text("{oops", encoding="utf-8")
        (tmp_path / "README.txt").write_text("not chunks", encoding="utf-8")

        result = indexer.index_directory(tmp_path)

        assert result.files_scanned == 4
        assert result.chunks_indexed == 5
        assert indexer.lexical_index.get_chunk("x") is None
        assert any("broken.chunks.json" in error for error in result.errors)

    def test_highest_priority_producer_wins(self, tmp_path, indexer, java_chunks):
        write_json(tmp_path / "a.chunks.json", [c.model_dump(mode="json") for c in java_chunks])
        indexer.register_producer(UpperCaseProducer())

        result = indexer.index_directory(tmp_path)

        assert result.chunks_indexed == 1

    def test_missing_directory(self, tmp_path, indexer):
        with pytest.raises(FileNotFoundError):
            indexer.index_directory(tmp_path / "missing")
