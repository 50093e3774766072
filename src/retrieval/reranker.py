"""External reranker adapter.

The orchestrator's last stage hands at most RERANK_MAX_CANDIDATES candidates
to a scoring oracle and fuses the 0-10 scores with vector similarity:

    combined = 0.4 * vector_similarity + 0.6 * (score / 10)

Candidates the oracle has no opinion on (omitted, unknown id, timeout,
malformed reply) fall back to their vector similarity. Oracle failures are
always recovered here and never reach the caller.

Implementations:
- LLMReranker: chat model via langchain (Gemini by default)
- LocalReranker: deterministic token-overlap scorer for tests and offline use

Author: Hay Hoffman
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Callable

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from models.chunk import ChunkKind
from models.retrieval import RankedCandidate, RerankCandidate, RerankResponse, RerankScore
from prompts.rerank_prompt import (
    RERANK_SYSTEM_PROMPT,
    build_pattern_rerank_prompt,
    build_rerank_prompt,
)
from settings import (
    RERANK_ENABLED,
    RERANK_LLM_WEIGHT,
    RERANK_MAX_CANDIDATES,
    RERANK_MAX_CONTENT_CHARS,
    RERANK_MODEL,
    RERANK_TEMPERATURE,
    RERANK_TIMEOUT,
    RERANK_VECTOR_WEIGHT,
)
from src.exceptions import OracleMalformedResponse, OracleUnavailable
from src.llm import get_cached_llm, invoke_json, invoke_structured, is_llm_configured
from src.retrieval.tokenizer import tokenize_code_aware

logger = logging.getLogger(__name__)

__all__ = ["Reranker", "LLMReranker", "LocalReranker", "create_default_reranker"]


class Reranker(ABC):
    """Base adapter: batching, truncation, timeout and score fusion.

    Subclasses only implement ``score_candidates`` (and optionally
    ``score_pattern_candidates``) and may raise OracleUnavailable or
    OracleMalformedResponse.
    """

    def __init__(
        self,
        max_candidates: int = RERANK_MAX_CANDIDATES,
        max_content_chars: int = RERANK_MAX_CONTENT_CHARS,
        vector_weight: float = RERANK_VECTOR_WEIGHT,
        llm_weight: float = RERANK_LLM_WEIGHT,
        timeout: float = RERANK_TIMEOUT,
    ):
        self.max_candidates = max_candidates
        self.max_content_chars = max_content_chars
        self.vector_weight = vector_weight
        self.llm_weight = llm_weight
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="rerank")

    @abstractmethod
    def score_candidates(self, candidates: list[RerankCandidate], query: str) -> RerankResponse:
        """Score a batch of candidate summaries against a free-text query."""

    def score_pattern_candidates(
        self,
        candidates: list[RerankCandidate],
        source_text: str,
        target_hint: str | None = None,
        preferred_kind: ChunkKind | None = None,
    ) -> RerankResponse:
        """Score candidates as equivalents of a source fragment.

        Defaults to scoring against the fragment (plus hint) as a query.
        """
        query = f"{source_text}\n{target_hint}" if target_hint else source_text
        return self.score_candidates(candidates, query)

    # =========================================================================
    # Public contract
    # =========================================================================

    def rerank(self, candidates: list[RankedCandidate], query: str) -> list[RankedCandidate]:
        """Rerank candidates for a free-text query.

        Returns:
            Candidates with external_score / combined_score set, sorted by
            combined score (ranking_method "llm_rerank" or "vector_fallback")
        """
        return self._rerank(
            candidates,
            lambda summaries: self.score_candidates(summaries, query),
            "llm_rerank",
            "vector_fallback",
        )

    def rerank_for_pattern(
        self,
        candidates: list[RankedCandidate],
        source_text: str,
        target_hint: str | None = None,
        preferred_kind: ChunkKind | None = None,
    ) -> list[RankedCandidate]:
        """Rerank candidates for the pattern-matching variant.

        Returns:
            Candidates sorted by combined score (ranking_method
            "pattern_rerank" or "pattern_fallback")
        """
        return self._rerank(
            candidates,
            lambda summaries: self.score_pattern_candidates(
                summaries, source_text, target_hint, preferred_kind
            ),
            "pattern_rerank",
            "pattern_fallback",
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _rerank(
        self,
        candidates: list[RankedCandidate],
        scorer: Callable[[list[RerankCandidate]], RerankResponse],
        method: str,
        fallback_method: str,
    ) -> list[RankedCandidate]:
        if not candidates:
            return []

        batch = candidates[: self.max_candidates]
        summaries = [self.summarize(candidate) for candidate in batch]
        scores = self._collect_scores(scorer, summaries)

        merged = [
            self._merge(candidate, scores.get(candidate.chunk.id), method, fallback_method)
            for candidate in candidates
        ]
        # Stable sort keeps the incoming order for equal scores
        merged.sort(key=lambda c: -c.combined_score)

        logger.info(
            f"Reranked {len(candidates)} candidates: "
            f"{len(scores)} scored by {type(self).__name__}, "
            f"{len(candidates) - len(scores)} fell back to vector similarity"
        )
        return merged

    def _collect_scores(
        self,
        scorer: Callable[[list[RerankCandidate]], RerankResponse],
        summaries: list[RerankCandidate],
    ) -> dict[str, RerankScore]:
        """Run the scorer under the timeout; any failure means "no opinion"."""
        future = self._executor.submit(scorer, summaries)
        try:
            response = future.result(timeout=self.timeout)
        except FuturesTimeoutError:
            future.cancel()
            logger.warning(f"Reranker timed out after {self.timeout}s, using vector fallback")
            return {}
        except OracleUnavailable as e:
            logger.warning(f"Reranker unavailable, using vector fallback: {e}")
            return {}
        except OracleMalformedResponse as e:
            logger.warning(f"Reranker returned a malformed response, using vector fallback: {e}")
            return {}
        except Exception as e:
            logger.error(f"Reranker failed, using vector fallback: {e}", exc_info=True)
            return {}

        known_ids = {summary.chunk_id for summary in summaries}
        scores: dict[str, RerankScore] = {}
        for ranking in response.rankings:
            if ranking.chunk_id not in known_ids:
                logger.debug(f"Ignoring score for unknown chunk id: {ranking.chunk_id}")
                continue
            scores.setdefault(ranking.chunk_id, ranking)
        return scores

    def summarize(self, candidate: RankedCandidate) -> RerankCandidate:
        """Build the truncated summary sent to the oracle."""
        chunk = candidate.chunk
        content = chunk.content
        if len(content) > self.max_content_chars:
            content = content[: self.max_content_chars] + "..."

        return RerankCandidate(
            chunk_id=chunk.id,
            kind=chunk.kind,
            qualified_name=chunk.qualified_name,
            file_path=chunk.file_path,
            content=content,
            vector_similarity=candidate.vector_similarity,
            structural_mapping=dict(chunk.structural_mapping),
            imports=list(chunk.imports),
            api_calls=list(chunk.api_call_sequence),
        )

    def _merge(
        self,
        candidate: RankedCandidate,
        score: RerankScore | None,
        method: str,
        fallback_method: str,
    ) -> RankedCandidate:
        similarity = candidate.vector_similarity
        if score is None:
            return candidate.model_copy(update={
                "external_score": None,
                "combined_score": self.vector_weight * similarity + self.llm_weight * similarity,
                "ranking_method": fallback_method,
            })

        return candidate.model_copy(update={
            "external_score": score.score,
            "combined_score": self.vector_weight * similarity + self.llm_weight * (score.score / 10.0),
            "ranking_method": method,
            "reasoning": score.reasoning,
        })


class LLMReranker(Reranker):
    """Reranker backed by a langchain chat model.

    Attributes:
        llm: Chat model (resolved lazily from the LLM cache when not given)
        model: Model name used when no llm is injected
        structured_output: Use the model's native structured output; when
            False the JSON object is extracted from a plain reply
    """

    def __init__(
        self,
        llm: BaseChatModel | None = None,
        model: str = RERANK_MODEL,
        temperature: float = RERANK_TEMPERATURE,
        structured_output: bool = True,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.llm = llm
        self.model = model
        self.temperature = temperature
        self.structured_output = structured_output

    def _get_llm(self) -> BaseChatModel:
        if self.llm is not None:
            return self.llm
        if not is_llm_configured():
            raise OracleUnavailable("No API key configured for the reranking model")
        try:
            self.llm = get_cached_llm(self.model)
        except RuntimeError as e:
            raise OracleUnavailable(str(e)) from e
        return self.llm

    def score_candidates(self, candidates: list[RerankCandidate], query: str) -> RerankResponse:
        return self._invoke(build_rerank_prompt(query, candidates))

    def score_pattern_candidates(
        self,
        candidates: list[RerankCandidate],
        source_text: str,
        target_hint: str | None = None,
        preferred_kind: ChunkKind | None = None,
    ) -> RerankResponse:
        prompt = build_pattern_rerank_prompt(
            source_text,
            candidates,
            target_hint=target_hint,
            preferred_kind=preferred_kind.value if preferred_kind is not None else None,
        )
        return self._invoke(prompt)

    def _invoke(self, user_prompt: str) -> RerankResponse:
        llm = self._get_llm()
        messages = [
            SystemMessage(content=RERANK_SYSTEM_PROMPT),
            HumanMessage(content=user_prompt),
        ]
        invoke = invoke_structured if self.structured_output else invoke_json

        try:
            return invoke(messages, RerankResponse, llm=llm, temperature=self.temperature)
        except RuntimeError as e:
            if isinstance(e.__cause__, ValueError):
                raise OracleMalformedResponse(str(e)) from e
            raise OracleUnavailable(str(e)) from e


class LocalReranker(Reranker):
    """Deterministic reranker scoring by query-term coverage.

    score = round(10 * matched_query_terms / query_terms), computed over the
    candidate's content and qualified name. Needs no network access.
    """

    def score_candidates(self, candidates: list[RerankCandidate], query: str) -> RerankResponse:
        query_terms = set(tokenize_code_aware(query))
        if not query_terms:
            return RerankResponse()

        rankings = []
        for candidate in candidates:
            text = f"{candidate.qualified_name or ''}\n{candidate.content}"
            matched = query_terms & set(tokenize_code_aware(text))
            rankings.append(RerankScore(
                chunk_id=candidate.chunk_id,
                score=round(10 * len(matched) / len(query_terms)),
                reasoning=f"matched {len(matched)}/{len(query_terms)} query terms",
            ))
        return RerankResponse(rankings=rankings)


def create_default_reranker() -> Reranker | None:
    """LLM reranker when enabled and configured, otherwise None (vector-only mode)."""
    if not RERANK_ENABLED:
        logger.info("Reranking disabled by configuration")
        return None
    if not is_llm_configured():
        logger.warning("GOOGLE_API_KEY not set, reranking runs in vector-only mode")
        return None
    return LLMReranker()
