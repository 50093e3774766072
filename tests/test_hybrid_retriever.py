"""Tests for the hybrid retrieval pipeline (no LLM in the loop).

This module tests the orchestrator stages end to end:
- Lexical prefilter short-circuit
- Graph filter retention (query and pattern modes)
- Vector recall intersection
- Reranking and vector-only fallback
- Failure handling at the pipeline boundary

Author: Hay Hoffman
"""

import numpy as np
import pytest

from models.chunk import ChunkKind
from src.exceptions import DimensionMismatch, QuerySyntaxError
from src.retrieval.code_graph import CodeGraph
from src.retrieval.hybrid_retriever import (
    HybridRetriever,
    build_pattern_query,
    graph_retention_count,
    pattern_retention_count,
)
from src.retrieval.lexical_index import LexicalIndex
from src.retrieval.reranker import LocalReranker
from src.retrieval.tokenizer import tokenize_code_aware
from src.retrieval.vector_index import VectorIndex


# =============================================================================
# Test Fixtures
# =============================================================================


class VocabularyEmbedder:
    """One axis per vocabulary word plus a shared axis for everything else."""

    def __init__(self, vocabulary: list[str]):
        self.vocabulary = vocabulary

    def __call__(self, text: str) -> np.ndarray:
        vector = np.zeros(len(self.vocabulary) + 1)
        for token in tokenize_code_aware(text):
            if token in self.vocabulary:
                vector[self.vocabulary.index(token)] += 1.0
            else:
                vector[-1] += 1.0
        return vector


def build_retriever(chunks, embedding_fn=None, with_graph=False, reranker=None, **tunables):
    lexical_index = LexicalIndex()
    lexical_index.insert_batch(chunks)

    vector_index = None
    if embedding_fn is not None:
        vector_index = VectorIndex(embedding_fn=embedding_fn)
        vector_index.insert_batch(chunks)

    graph = None
    if with_graph:
        graph = CodeGraph()
        graph.build(chunks)

    return HybridRetriever(lexical_index, vector_index, graph, reranker, **tunables)


# =============================================================================
# Retention rules
# =============================================================================


class TestRetentionCounts:
    """Tests for the stage-2 retention arithmetic."""

    @pytest.mark.parametrize("count, expected", [(1, 1), (3, 3), (5, 4), (10, 8), (11, 9), (35, 28), (100, 80)])
    def test_graph_retention_is_ceiling(self, count, expected):
        assert graph_retention_count(count) == expected

    @pytest.mark.parametrize("count, expected", [(3, 3), (5, 5), (9, 5), (10, 5), (12, 6), (41, 20)])
    def test_pattern_retention_floor(self, count, expected):
        assert pattern_retention_count(count) == expected


class TestPatternQuery:
    """Tests for building a lexical query from a code fragment."""

    def test_identifiers_filtered(self):
        source = "public void saveUser(User user) { userDao.save(user); }"
        assert build_pattern_query(source) == "saveUser User user userDao save"

    def test_keywords_dropped_in_any_case(self):
        assert build_pattern_query("Public Class Widget Extends Base") == "Widget Base"

    def test_hint_appended(self):
        assert build_pattern_query("int count = total;", "persist account") == "count total persist account"

    def test_identifier_cap(self):
        source = " ".join(f"name{i}" for i in range(30))
        assert len(build_pattern_query(source).split()) == 20

    def test_no_identifiers(self):
        assert build_pattern_query("if (x) { }") == ""


# =============================================================================
# Query pipeline
# =============================================================================


class TestFindRelevant:
    """Tests for the free-text query pipeline."""

    def test_login_scenario_passthrough(self, login_chunks):
        """Without graph, vectors or reranker the best lexical match stays first."""
        retriever = build_retriever(login_chunks)

        results = retriever.find_relevant("validate login credentials")

        assert results[0].chunk.id == "A"
        for result in results:
            assert result.ranking_method == "vector_only"
            assert result.combined_score == result.vector_similarity

    def test_vector_only_without_reranker(self, java_chunks, embedder):
        retriever = build_retriever(java_chunks, embedding_fn=embedder, with_graph=True, similarity_threshold=0.0)

        results = retriever.find_relevant("find user by name")

        assert results
        for result in results:
            assert result.ranking_method == "vector_only"
            assert result.combined_score == result.vector_similarity
            assert result.external_score is None

    def test_graph_retention_applied(self, chunk_factory):
        chunks = [chunk_factory(f"c{i}", f"alpha item{i}") for i in range(10)]
        retriever = build_retriever(chunks, with_graph=True)

        assert len(retriever.find_relevant("alpha", max_results=100)) == 8

    def test_no_graph_keeps_all(self, chunk_factory):
        chunks = [chunk_factory(f"c{i}", f"alpha item{i}") for i in range(10)]
        retriever = build_retriever(chunks)

        assert len(retriever.find_relevant("alpha", max_results=100)) == 10

    def test_structural_score_recorded(self, java_chunks):
        retriever = build_retriever(java_chunks, with_graph=True)

        results = {r.chunk.id: r for r in retriever.find_relevant("login action")}

        assert results["login_action"].structural_score > 0

    def test_vector_recall_intersects(self, chunk_factory):
        """Lexical candidates the vector stage does not confirm are dropped."""
        chunks = [
            chunk_factory("A", "login validates credentials"),
            chunk_factory("B", "logout clears session"),
            chunk_factory("Z", "login banana cherry date elder fig grape"),
        ]
        embedding_fn = VocabularyEmbedder(["login", "credentials", "validates", "logout", "session", "clears"])
        retriever = build_retriever(chunks, embedding_fn=embedding_fn)

        results = retriever.find_relevant("login credentials")

        assert [r.chunk.id for r in results] == ["A"]
        assert results[0].vector_similarity == pytest.approx(2 / np.sqrt(6))

    def test_reranker_applied(self, java_chunks, embedder):
        retriever = build_retriever(
            java_chunks, embedding_fn=embedder, reranker=LocalReranker(), similarity_threshold=0.0
        )

        results = retriever.find_relevant("saveUser")

        assert results[0].chunk.id == "svc_save"
        assert results[0].ranking_method == "llm_rerank"
        assert results[0].external_score == 10

    def test_sorted_and_truncated(self, java_chunks, embedder):
        retriever = build_retriever(java_chunks, embedding_fn=embedder, similarity_threshold=0.0)

        results = retriever.find_relevant("user name", max_results=2)

        assert len(results) == 2
        assert results[0].combined_score >= results[1].combined_score

    def test_zero_max_results(self, login_chunks):
        assert build_retriever(login_chunks).find_relevant("login", max_results=0) == []

    def test_no_lexical_match_stops_pipeline(self, java_chunks, embedder):
        retriever = build_retriever(java_chunks, embedding_fn=embedder)
        calls_before = embedder.calls

        assert retriever.find_relevant("zzzunknown") == []
        assert embedder.calls == calls_before

    def test_chunk_lookup_preferred(self, login_chunks, chunk_factory):
        replacement = chunk_factory("A", "login validates credentials", file_path="store/A.java")
        retriever = build_retriever(login_chunks)
        retriever.chunk_lookup = {"A": replacement}.get

        results = retriever.find_relevant("login")

        assert results[0].chunk.file_path == "store/A.java"


class TestFailureHandling:
    """Tests for errors at the pipeline boundary."""

    def test_query_syntax_error_propagates(self, login_chunks):
        with pytest.raises(QuerySyntaxError):
            build_retriever(login_chunks).find_relevant('"unbalanced')

    def test_free_text_dash_is_not_an_operator(self, login_chunks):
        results = build_retriever(login_chunks).find_relevant("login - credentials")

        assert results[0].chunk.id == "A"

    def test_dimension_mismatch_propagates(self, login_chunks):
        lexical_index = LexicalIndex()
        lexical_index.insert_batch(login_chunks)
        vector_index = VectorIndex(embedding_fn=lambda text: [1.0, 0.0, 0.0])
        vector_index.insert_embedded(login_chunks, [np.ones(2)] * len(login_chunks))

        retriever = HybridRetriever(lexical_index, vector_index)

        with pytest.raises(DimensionMismatch):
            retriever.find_relevant("login")

    def test_stage_failure_returns_empty(self, java_chunks, monkeypatch):
        retriever = build_retriever(java_chunks, with_graph=True)

        def broken(*args, **kwargs):
            raise RuntimeError("graph exploded")

        monkeypatch.setattr(retriever.graph, "score_for_query", broken)

        assert retriever.find_relevant("user") == []

    def test_lexical_failure_returns_empty(self, login_chunks, monkeypatch):
        retriever = build_retriever(login_chunks)
        monkeypatch.setattr(retriever.lexical_index, "search", lambda *a, **k: 1 / 0)

        assert retriever.find_relevant("login") == []


# =============================================================================
# Pattern pipeline
# =============================================================================


class TestFindRelevantForPattern:
    """Tests for the source-fragment matching variant."""

    SOURCE = "int total = computeTotal(items);"

    def test_pattern_retention_floor(self, chunk_factory):
        chunks = [chunk_factory(f"m{i}", f"computeTotal variant{i}") for i in range(12)]
        retriever = build_retriever(chunks, with_graph=True)

        results = retriever.find_relevant_for_pattern(self.SOURCE, max_results=100)

        assert len(results) == 6

    def test_small_batch_keeps_floor(self, chunk_factory):
        chunks = [chunk_factory(f"m{i}", f"computeTotal variant{i}") for i in range(4)]
        retriever = build_retriever(chunks, with_graph=True)

        assert len(retriever.find_relevant_for_pattern(self.SOURCE, max_results=100)) == 4

    def test_preferred_kind_filters_prefilter(self, chunk_factory):
        chunks = [
            chunk_factory("method", "computeTotal over items"),
            chunk_factory("klass", "computeTotal helper class", kind=ChunkKind.CLASS),
        ]
        retriever = build_retriever(chunks, with_graph=True)

        results = retriever.find_relevant_for_pattern(self.SOURCE, preferred_kind=ChunkKind.CLASS)

        assert [r.chunk.id for r in results] == ["klass"]

    def test_pattern_reranking_method(self, java_chunks, embedder):
        retriever = build_retriever(
            java_chunks, embedding_fn=embedder, with_graph=True, reranker=LocalReranker()
        )

        results = retriever.find_relevant_for_pattern(
            "User u = userDao.findByName(name);", preferred_kind=ChunkKind.METHOD
        )

        assert results
        assert {r.ranking_method for r in results} <= {"pattern_rerank", "pattern_fallback"}

    def test_relaxed_threshold(self, chunk_factory):
        """Similarity of about 0.28 passes the pattern threshold (0.3 x 0.8) but not the query one."""
        chunks = [chunk_factory("m", "computeTotal a1 a2 a3 a4 a5 a6")]
        embedding_fn = VocabularyEmbedder(["computetotal", "compute", "total", "items"])
        retriever = build_retriever(chunks, embedding_fn=embedding_fn)

        assert retriever.find_relevant("computeTotal") == []
        assert [r.chunk.id for r in retriever.find_relevant_for_pattern("computeTotal(x)")] == ["m"]

    def test_no_identifiers(self, login_chunks):
        assert build_retriever(login_chunks).find_relevant_for_pattern("if (x) { }") == []


# =============================================================================
# Related chunks and graph generations
# =============================================================================


class TestRelated:
    """Tests for find_related and rebuild_graph."""

    def test_find_related_combines_vector_and_graph(self, java_chunks, embedder):
        retriever = build_retriever(java_chunks, embedding_fn=embedder, with_graph=True)

        related = [chunk.id for chunk in retriever.find_related("login_action", max_results=10)]

        assert "login_action" not in related
        assert "svc_find" in related
        assert len(related) == len(set(related))

    def test_rebuild_graph_swaps_instance(self, java_chunks):
        retriever = build_retriever(java_chunks, with_graph=True)
        old_graph = retriever.graph

        new_graph = retriever.rebuild_graph(java_chunks[:2])

        assert retriever.graph is new_graph
        assert new_graph is not old_graph
        assert len(old_graph) == len(java_chunks)
        assert len(new_graph) == 2
