"""Data models for the hybrid code retrieval engine.

This package contains all Pydantic models used throughout the application.
"""

from .chunk import Chunk, ChunkKind, create_chunk_from_dict, make_chunk_id
from .retrieval import (
    IndexingResult,
    LexicalHit,
    PatternHints,
    QueryHints,
    RankedCandidate,
    RerankCandidate,
    RerankResponse,
    RerankScore,
    SimilarityResult,
    VectorEntry,
)

__all__ = [
    # Chunks
    "Chunk",
    "ChunkKind",
    "create_chunk_from_dict",
    "make_chunk_id",
    # Stage records
    "LexicalHit",
    "VectorEntry",
    "SimilarityResult",
    "QueryHints",
    "PatternHints",
    # Reranking
    "RerankCandidate",
    "RerankScore",
    "RerankResponse",
    "RankedCandidate",
    # Indexing
    "IndexingResult",
]
