"""Retrieval models for the hybrid code retrieval engine.

This module defines the records passed between pipeline stages:
- LexicalHit: one BM25 search result
- VectorEntry / SimilarityResult: stored embedding and nearest-neighbour result
- QueryHints / PatternHints: structural hints inferred from query or source text
- RerankCandidate / RerankScore / RerankResponse: reranker request and response
- RankedCandidate: fused per-query result returned to callers
- IndexingResult: summary of an indexing run

Author: Hay Hoffman
Version: 2.0
"""

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from models.chunk import Chunk, ChunkKind

__all__ = [
    "LexicalHit",
    "VectorEntry",
    "SimilarityResult",
    "QueryHints",
    "PatternHints",
    "RerankCandidate",
    "RerankScore",
    "RerankResponse",
    "RankingMethod",
    "RankedCandidate",
    "IndexingResult",
]

RankingMethod = Literal[
    "llm_rerank",
    "vector_fallback",
    "vector_only",
    "pattern_rerank",
    "pattern_fallback",
]


class LexicalHit(BaseModel):
    """Single lexical (BM25) search result."""

    chunk_id: str
    content: str
    score: float
    file_path: str = ""
    qualified_name: str | None = None
    kind: ChunkKind


class VectorEntry(BaseModel):
    """Stored embedding for one chunk."""

    chunk_id: str
    vector: tuple[float, ...]
    inserted_at: float = Field(..., description="Unix timestamp of insertion")


class SimilarityResult(BaseModel):
    """Nearest-neighbour result from the vector index."""

    chunk_id: str
    chunk: Chunk
    similarity: float


class QueryHints(BaseModel):
    """Structural hints inferred from free-text query keywords.

    All hint values are lower-cased.
    """

    package_hints: set[str] = Field(default_factory=set)
    api_hints: set[str] = Field(default_factory=set)
    import_hints: set[str] = Field(default_factory=set)
    mapping_hints: set[str] = Field(default_factory=set)

    @property
    def is_empty(self) -> bool:
        return not (self.package_hints or self.api_hints or self.import_hints or self.mapping_hints)


class PatternHints(BaseModel):
    """Hints extracted from a source-codebase fragment."""

    preferred_kind: ChunkKind | None = None
    api_patterns: list[str] = Field(default_factory=list)
    signature_hints: list[str] = Field(default_factory=list)
    framework_hints: list[str] = Field(default_factory=list)


class RerankCandidate(BaseModel):
    """Candidate summary sent to the external reranker."""

    chunk_id: str
    kind: ChunkKind
    qualified_name: str | None = None
    file_path: str = ""
    content: str = Field(..., description="Content truncated for the prompt")
    vector_similarity: float = 0.0
    structural_mapping: dict[str, str] = Field(default_factory=dict)
    imports: list[str] = Field(default_factory=list)
    api_calls: list[str] = Field(default_factory=list)


class RerankScore(BaseModel):
    """Reranker opinion on one candidate."""

    chunk_id: str = Field(..., description="Id of the ranked candidate")
    score: int = Field(..., description="Relevance score from 0 (irrelevant) to 10 (exact match)")
    reasoning: str = Field(default="", description="Short justification (advisory only)")

    @field_validator('score', mode='before')
    @classmethod
    def clamp_score(cls, v: Any) -> int:
        """Round to the nearest integer and clamp into [0, 10]."""
        try:
            value = float(v)
        except TypeError as e:
            raise ValueError(f"score must be a number, got {type(v).__name__}") from e
        return max(0, min(10, round(value)))


class RerankResponse(BaseModel):
    """Structured reranker output."""

    rankings: list[RerankScore] = Field(
        default_factory=list,
        description="Scores for a subset of the candidates; omitted ids mean no opinion"
    )


class RankedCandidate(BaseModel):
    """Fused retrieval result for one query.

    Scores from every stage are kept for inspection; ``combined_score`` is the
    value results are ordered by.
    """

    chunk: Chunk
    lexical_score: float = 0.0
    vector_similarity: float = 0.0
    structural_score: float = 0.0
    external_score: float | None = Field(
        default=None,
        description="Reranker score in [0, 10], None when the reranker had no opinion"
    )
    combined_score: float = 0.0
    ranking_method: RankingMethod = "vector_only"
    reasoning: str = ""

    @property
    def chunk_id(self) -> str:
        return self.chunk.id

    @property
    def citation(self) -> str:
        """Format citation string (path:start-end)."""
        return self.chunk.citation

    @property
    def preview(self) -> str:
        """Get content preview (first 200 chars)."""
        content = self.chunk.content
        if len(content) <= 200:
            return content
        return content[:200] + "..."

    def to_metadata(self) -> dict:
        """Flatten into a JSON-friendly dict for display or hand-off."""
        return {
            "chunk_id": self.chunk.id,
            "kind": self.chunk.kind.value,
            "file_path": self.chunk.file_path,
            "qualified_name": self.chunk.qualified_name,
            "start_line": self.chunk.start_line,
            "end_line": self.chunk.end_line,
            "lexical_score": self.lexical_score,
            "vector_similarity": self.vector_similarity,
            "structural_score": self.structural_score,
            "external_score": self.external_score,
            "combined_score": self.combined_score,
            "ranking_method": self.ranking_method,
            "reasoning": self.reasoning,
        }


class IndexingResult(BaseModel):
    """Summary of one indexing run."""

    files_scanned: int = 0
    chunks_received: int = 0
    chunks_indexed: int = 0
    chunks_skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    lexical_count: int = 0
    vector_count: int = 0
    persisted: bool = True
    elapsed_seconds: float = 0.0
