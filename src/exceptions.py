"""Exceptions raised by the retrieval engine.

Ingestion errors are per item, query errors abort a single query, and
reranker errors are always recovered inside the adapter.
"""


class RetrievalError(Exception):
    """Base class for all retrieval engine errors."""

    pass


class InvalidChunk(RetrievalError, ValueError):
    """Raised when a chunk record is malformed (empty id or content, bad line range)."""

    def __init__(self, message: str, chunk_id: str | None = None):
        """Initialize invalid chunk error.

        Args:
            message: Human-readable error message
            chunk_id: Id of the offending chunk, if known
        """
        super().__init__(message)
        self.chunk_id = chunk_id


class QuerySyntaxError(RetrievalError):
    """Raised when lexical query text cannot be parsed."""

    def __init__(self, message: str, query: str = "", position: int = -1):
        """Initialize query syntax error.

        Args:
            message: Human-readable error message
            query: The query text that failed to parse
            position: Character offset of the problem (-1 if unknown)
        """
        super().__init__(message)
        self.query = query
        self.position = position


class DimensionMismatch(RetrievalError):
    """Raised when an embedding width differs from the vector index width."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class StoreIOError(RetrievalError):
    """Raised when an index cannot be persisted to or loaded from disk."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class OracleUnavailable(RetrievalError):
    """Raised when the external reranker cannot be reached or timed out."""

    pass


class OracleMalformedResponse(RetrievalError):
    """Raised when the external reranker returns an unusable response."""

    pass


__all__ = [
    "RetrievalError",
    "InvalidChunk",
    "QuerySyntaxError",
    "DimensionMismatch",
    "StoreIOError",
    "OracleUnavailable",
    "OracleMalformedResponse",
]
