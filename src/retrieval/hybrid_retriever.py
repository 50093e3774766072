"""Hybrid retrieval combining BM25, code graph, vectors and an external reranker.

This module implements the core retrieval pipeline:
1. Lexical prefilter: BM25 top-N (empty result ends the pipeline)
2. Graph filter: 0.7 x normalized lexical + 0.3 x structural score,
   keep ceil(80%) of candidates (skipped without a graph)
3. Vector recall: cosine top-K over the whole vector index, intersected with
   the surviving candidates (passthrough without a vector index)
4. External rerank: 0.4 x vector + 0.6 x (oracle score / 10) on at most 20
   candidates (vector-only without a reranker)
5. Sort by combined score and truncate

A pattern-matching variant finds the equivalent of a source-codebase fragment:
identifier query, kind-filtered prefilter, pattern graph scoring, relaxed
vector threshold and max(5, n/2) retention.

Author: Hay Hoffman
"""

import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Callable

from models.chunk import Chunk, ChunkKind
from models.retrieval import RankedCandidate
from settings import (
    FINAL_RESULT_SIZE,
    GRAPH_LEXICAL_BLEND,
    GRAPH_RETENTION_RATIO,
    GRAPH_STRUCTURAL_BLEND,
    JAVA_KEYWORDS,
    PATTERN_MAX_IDENTIFIERS,
    PATTERN_MIN_RETAINED,
    PATTERN_RETENTION_RATIO,
    PATTERN_SIZE_MULTIPLIER,
    PATTERN_THRESHOLD_FACTOR,
    PREFILTER_SIZE,
    VECTOR_RECALL_SIZE,
    VECTOR_SIMILARITY_THRESHOLD,
)
from src.exceptions import DimensionMismatch, QuerySyntaxError
from src.retrieval.code_graph import CodeGraph, extract_query_hints
from src.retrieval.lexical_index import LexicalIndex
from src.retrieval.reranker import Reranker
from src.retrieval.vector_index import VectorIndex

logger = logging.getLogger(__name__)

__all__ = ["HybridRetriever", "build_pattern_query", "graph_retention_count", "pattern_retention_count"]

# Pre-compiled identifier pattern for pattern queries
_IDENTIFIER_PATTERN = re.compile(r'\b[A-Za-z][A-Za-z0-9_]*\b')


@dataclass
class _Candidate:
    """Mutable per-query working record (never leaves the pipeline)."""

    chunk: Chunk
    lexical_score: float
    normalized_lexical: float
    structural_score: float = 0.0
    stage_score: float = 0.0
    vector_similarity: float = 0.0


def build_pattern_query(
    source_text: str,
    target_hint: str | None = None,
    max_identifiers: int = PATTERN_MAX_IDENTIFIERS,
) -> str:
    """Build a lexical query from a code fragment's identifiers.

    Identifiers of length >= 3 that are not Java keywords (any case), distinct, in order of
    appearance, at most ``max_identifiers``; hint words are appended.
    """
    identifiers = [
        name for name in dict.fromkeys(_IDENTIFIER_PATTERN.findall(source_text))
        if len(name) >= 3 and name.lower() not in JAVA_KEYWORDS
    ][:max_identifiers]

    if target_hint:
        identifiers.extend(_IDENTIFIER_PATTERN.findall(target_hint))

    return " ".join(identifiers)


def graph_retention_count(count: int, ratio: float = GRAPH_RETENTION_RATIO) -> int:
    """Candidates kept after the graph filter: ceil(ratio x count)."""
    # Rounding guards against 0.8 * n landing a hair above an integer
    return min(count, math.ceil(round(ratio * count, 9)))


def pattern_retention_count(
    count: int,
    ratio: float = PATTERN_RETENTION_RATIO,
    minimum: int = PATTERN_MIN_RETAINED,
) -> int:
    """Candidates kept after the pattern graph filter: max(minimum, floor(ratio x count))."""
    return min(count, max(minimum, math.floor(round(ratio * count, 9))))


class HybridRetriever:
    """Multi-stage retrieval over lexical, structural and dense signals.

    Only the lexical index is required. Without a graph, stage 2 is skipped;
    without a vector index, stage 3 passes candidates through with their
    stage-2 score as similarity; without a reranker, combined score equals
    vector similarity ("vector_only").

    Attributes:
        lexical_index: BM25 index (stage 1)
        graph: Code relationship graph (stage 2)
        vector_index: Cosine vector index (stage 3)
        reranker: External reranker adapter (stage 4)
        chunk_lookup: Optional id -> Chunk resolver (e.g. ChunkStore.get),
            consulted before the indices
    """

    def __init__(
        self,
        lexical_index: LexicalIndex,
        vector_index: VectorIndex | None = None,
        graph: CodeGraph | None = None,
        reranker: Reranker | None = None,
        chunk_lookup: Callable[[str], Chunk | None] | None = None,
        *,
        prefilter_size: int = PREFILTER_SIZE,
        vector_recall_size: int = VECTOR_RECALL_SIZE,
        similarity_threshold: float = VECTOR_SIMILARITY_THRESHOLD,
        final_result_size: int = FINAL_RESULT_SIZE,
        lexical_blend: float = GRAPH_LEXICAL_BLEND,
        structural_blend: float = GRAPH_STRUCTURAL_BLEND,
        retention_ratio: float = GRAPH_RETENTION_RATIO,
        pattern_retention_ratio: float = PATTERN_RETENTION_RATIO,
        pattern_min_retained: int = PATTERN_MIN_RETAINED,
        pattern_threshold_factor: float = PATTERN_THRESHOLD_FACTOR,
        pattern_size_multiplier: int = PATTERN_SIZE_MULTIPLIER,
    ):
        self.lexical_index = lexical_index
        self.vector_index = vector_index
        self.graph = graph
        self.reranker = reranker
        self.chunk_lookup = chunk_lookup

        self.prefilter_size = prefilter_size
        self.vector_recall_size = vector_recall_size
        self.similarity_threshold = similarity_threshold
        self.final_result_size = final_result_size
        self.lexical_blend = lexical_blend
        self.structural_blend = structural_blend
        self.retention_ratio = retention_ratio
        self.pattern_retention_ratio = pattern_retention_ratio
        self.pattern_min_retained = pattern_min_retained
        self.pattern_threshold_factor = pattern_threshold_factor
        self.pattern_size_multiplier = pattern_size_multiplier

        logger.info(
            f"HybridRetriever initialized: lexical={lexical_index.count()} chunks, "
            f"vector={'on' if vector_index is not None else 'off'}, "
            f"graph={'on' if graph is not None else 'off'}, "
            f"reranker={type(reranker).__name__ if reranker is not None else 'off'}"
        )

    # =========================================================================
    # Public API
    # =========================================================================

    def find_relevant(self, query: str, max_results: int | None = None) -> list[RankedCandidate]:
        """Retrieve the chunks most relevant to a free-text query.

        Args:
            query: Natural-language or keyword query
            max_results: Number of results (default: FINAL_RESULT_SIZE)

        Returns:
            Ranked candidates, best first (empty when nothing matches)

        Raises:
            QuerySyntaxError: If the query is malformed
            DimensionMismatch: If the embedding function and index disagree
        """
        limit = self.final_result_size if max_results is None else max_results
        return self._guarded(
            query,
            lambda: self._run_query_pipeline(query, limit),
        )

    def find_relevant_for_pattern(
        self,
        source_text: str,
        target_hint: str | None = None,
        preferred_kind: ChunkKind | None = None,
        max_results: int | None = None,
    ) -> list[RankedCandidate]:
        """Find the target-codebase equivalent of a source-codebase fragment.

        Args:
            source_text: Source fragment (e.g. a method from another codebase)
            target_hint: Optional extra words describing the target
            preferred_kind: Restrict the prefilter to this chunk kind
            max_results: Number of results (default: FINAL_RESULT_SIZE)

        Returns:
            Ranked candidates, best first
        """
        limit = self.final_result_size if max_results is None else max_results
        return self._guarded(
            source_text[:80],
            lambda: self._run_pattern_pipeline(source_text, target_hint, preferred_kind, limit),
        )

    def find_related(self, chunk_id: str, max_results: int = 10) -> list[Chunk]:
        """Chunks related to ``chunk_id``: vector neighbours first, then graph neighbours."""
        related: list[Chunk] = []
        seen = {chunk_id}

        if self.vector_index is not None:
            for result in self.vector_index.find_similar_to_chunk(
                chunk_id, max_results, self.similarity_threshold
            ):
                if result.chunk_id not in seen:
                    seen.add(result.chunk_id)
                    related.append(result.chunk)

        if self.graph is not None and len(related) < max_results:
            for neighbor_id in self.graph.neighbors(chunk_id, max_results):
                if neighbor_id in seen:
                    continue
                chunk = self._resolve_chunk(neighbor_id)
                if chunk is not None:
                    seen.add(neighbor_id)
                    related.append(chunk)

        return related[:max_results]

    def rebuild_graph(self, chunks: list[Chunk]) -> CodeGraph:
        """Build a new graph generation from ``chunks`` and swap it in."""
        graph = CodeGraph()
        graph.build(chunks)
        self.graph = graph
        return graph

    # =========================================================================
    # Pipelines
    # =========================================================================

    def _guarded(self, label: str, pipeline) -> list[RankedCandidate]:
        """Run a pipeline; unexpected stage failures yield an empty result."""
        started = time.perf_counter()
        try:
            results = pipeline()
        except (QuerySyntaxError, DimensionMismatch):
            raise
        except Exception as e:
            logger.error(f"Retrieval failed for '{label}': {e}", exc_info=True)
            return []

        logger.info(
            f"Retrieved {len(results)} results for '{label}' "
            f"in {time.perf_counter() - started:.3f}s"
        )
        return results

    def _run_query_pipeline(self, query: str, max_results: int) -> list[RankedCandidate]:
        if max_results <= 0:
            return []

        candidates = self._lexical_prefilter(query, self.prefilter_size, None)
        if not candidates:
            logger.info("Stage 1 (lexical): no candidates, stopping")
            return []

        if self.graph is not None:
            structural = self.graph.score_for_query(
                [c.chunk.id for c in candidates], extract_query_hints(query)
            )
            candidates = self._graph_filter(
                candidates, structural, graph_retention_count(len(candidates), self.retention_ratio)
            )
        else:
            self._skip_graph(candidates)

        candidates = self._vector_recall(
            candidates, query, self.vector_recall_size, self.similarity_threshold
        )
        if not candidates:
            logger.info("Stage 3 (vector): no candidates survived, stopping")
            return []

        ranked = self._to_ranked(candidates)
        if self.reranker is not None:
            ranked = self.reranker.rerank(ranked, query)
        else:
            ranked = self._vector_only(ranked)

        return self._finalize(ranked, max_results)

    def _run_pattern_pipeline(
        self,
        source_text: str,
        target_hint: str | None,
        preferred_kind: ChunkKind | None,
        max_results: int,
    ) -> list[RankedCandidate]:
        if max_results <= 0:
            return []

        query = build_pattern_query(source_text, target_hint)
        if not query:
            logger.info("Pattern source has no usable identifiers")
            return []
        logger.debug(f"Pattern query: {query}")

        candidates = self._lexical_prefilter(
            query, self.prefilter_size * self.pattern_size_multiplier, preferred_kind
        )
        if not candidates:
            logger.info("Stage 1 (lexical, pattern): no candidates, stopping")
            return []

        if self.graph is not None:
            structural = self.graph.score_for_pattern(
                [c.chunk.id for c in candidates], source_text, preferred_kind
            )
            keep = pattern_retention_count(
                len(candidates), self.pattern_retention_ratio, self.pattern_min_retained
            )
            candidates = self._graph_filter(candidates, structural, keep)
        else:
            self._skip_graph(candidates)

        candidates = self._vector_recall(
            candidates,
            source_text,
            self.vector_recall_size * self.pattern_size_multiplier,
            self.similarity_threshold * self.pattern_threshold_factor,
        )
        if not candidates:
            logger.info("Stage 3 (vector, pattern): no candidates survived, stopping")
            return []

        ranked = self._to_ranked(candidates)
        if self.reranker is not None:
            ranked = self.reranker.rerank_for_pattern(
                ranked, source_text, target_hint, preferred_kind
            )
        else:
            ranked = self._vector_only(ranked)

        return self._finalize(ranked, max_results)

    # =========================================================================
    # Stages
    # =========================================================================

    def _lexical_prefilter(
        self,
        query: str,
        size: int,
        kind_filter: ChunkKind | None,
    ) -> list[_Candidate]:
        """Stage 1: BM25 top-N with scores normalized by the batch maximum."""
        hits = self.lexical_index.search(query, size, kind_filter)
        if not hits:
            return []

        max_score = max(hit.score for hit in hits)
        candidates = []
        for hit in hits:
            chunk = self._resolve_chunk(hit.chunk_id)
            if chunk is None:
                logger.warning(f"Lexical hit {hit.chunk_id} has no chunk record, skipping")
                continue
            normalized = hit.score / max_score if max_score > 0 else 0.0
            candidates.append(_Candidate(
                chunk=chunk,
                lexical_score=hit.score,
                normalized_lexical=normalized,
                stage_score=normalized,
            ))

        logger.info(f"Stage 1 (lexical): {len(candidates)} candidates")
        return candidates

    def _graph_filter(
        self,
        candidates: list[_Candidate],
        structural: dict[str, float],
        keep: int,
    ) -> list[_Candidate]:
        """Stage 2: blend lexical and structural scores, keep the top ``keep``."""
        for candidate in candidates:
            candidate.structural_score = structural.get(candidate.chunk.id, 0.0)
            candidate.stage_score = (
                self.lexical_blend * candidate.normalized_lexical
                + self.structural_blend * candidate.structural_score
            )

        # Stable sort keeps lexical order for equal blended scores
        ranked = sorted(candidates, key=lambda c: -c.stage_score)
        kept = ranked[:keep]

        logger.info(f"Stage 2 (graph): kept {len(kept)}/{len(candidates)} candidates")
        return kept

    @staticmethod
    def _skip_graph(candidates: list[_Candidate]) -> None:
        logger.debug(f"Stage 2 (graph): no graph configured, passing {len(candidates)} through")

    def _vector_recall(
        self,
        candidates: list[_Candidate],
        query_text: str,
        recall_size: int,
        threshold: float,
    ) -> list[_Candidate]:
        """Stage 3: intersect candidates with the vector index's top-K."""
        if self.vector_index is None:
            for candidate in candidates:
                candidate.vector_similarity = candidate.stage_score
            logger.debug(f"Stage 3 (vector): no vector index, passing {len(candidates)} through")
            return candidates

        results = self.vector_index.find_similar(query_text, recall_size, threshold)
        similarities = {result.chunk_id: result.similarity for result in results}

        survivors = [c for c in candidates if c.chunk.id in similarities]
        for candidate in survivors:
            candidate.vector_similarity = similarities[candidate.chunk.id]
        survivors.sort(key=lambda c: -c.vector_similarity)

        logger.info(
            f"Stage 3 (vector): {len(results)} recalled, "
            f"{len(survivors)}/{len(candidates)} candidates confirmed"
        )
        return survivors

    @staticmethod
    def _to_ranked(candidates: list[_Candidate]) -> list[RankedCandidate]:
        return [
            RankedCandidate(
                chunk=c.chunk,
                lexical_score=c.lexical_score,
                vector_similarity=c.vector_similarity,
                structural_score=c.structural_score,
                combined_score=c.vector_similarity,
                ranking_method="vector_only",
            )
            for c in candidates
        ]

    @staticmethod
    def _vector_only(ranked: list[RankedCandidate]) -> list[RankedCandidate]:
        """Stage 4 without a reranker: combined score is the vector similarity."""
        return [
            candidate.model_copy(update={
                "external_score": None,
                "combined_score": candidate.vector_similarity,
                "ranking_method": "vector_only",
            })
            for candidate in ranked
        ]

    @staticmethod
    def _finalize(ranked: list[RankedCandidate], max_results: int) -> list[RankedCandidate]:
        ordered = sorted(ranked, key=lambda c: -c.combined_score)
        return ordered[:max_results]

    # =========================================================================
    # Helpers
    # =========================================================================

    def _resolve_chunk(self, chunk_id: str) -> Chunk | None:
        if self.chunk_lookup is not None:
            chunk = self.chunk_lookup(chunk_id)
            if chunk is not None:
                return chunk
        chunk = self.lexical_index.get_chunk(chunk_id)
        if chunk is None and self.vector_index is not None:
            chunk = self.vector_index.get_chunk(chunk_id)
        return chunk
