"""Configuration settings for the hybrid code retrieval engine.

This module provides a unified configuration system with two categories:

1. SYSTEM CONSTANTS: Fixed values that define system behavior (not user-configurable)
   - Project paths, repository exclude patterns
   - Tokenizer and hint rule constants

2. USER SETTINGS: Configurable via environment variables (.env file)
   - API keys, model names
   - Tunable parameters (BM25 constants, stage sizes, score weights, timeouts)

Author: Hay Hoffman
Version: 3.0
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# ============================================================================
# SYSTEM CONSTANTS - Not user-configurable
# ============================================================================

# -----------------------------------------------------------------------------
# Project Paths
# -----------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
INDEX_DIR = DATA_DIR / "index"

LEXICAL_INDEX_DIR = INDEX_DIR / "lexical"
VECTOR_SNAPSHOT_FILE = INDEX_DIR / "vectors.pkl"
CHUNK_STORE_FILE = INDEX_DIR / "chunks.json"

# -----------------------------------------------------------------------------
# Tokenizer Constants
# -----------------------------------------------------------------------------

BM25_STOPWORDS: frozenset[str] = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "be", "been"
})

# Java reserved words, ignored when building a query from a code fragment
JAVA_KEYWORDS: frozenset[str] = frozenset({
    "abstract", "assert", "boolean", "break", "byte", "case", "catch", "char",
    "class", "const", "continue", "default", "do", "double", "else", "enum",
    "extends", "final", "finally", "float", "for", "goto", "if", "implements",
    "import", "instanceof", "int", "interface", "long", "native", "new",
    "package", "private", "protected", "public", "return", "short", "static",
    "strictfp", "super", "switch", "synchronized", "this", "throw", "throws",
    "transient", "try", "void", "volatile", "while", "true", "false", "null",
    "var", "record",
})

# Structural-mapping keys containing one of these markers produce routing edges
ROUTING_KEY_MARKERS: tuple[str, ...] = (
    "action", "form", "jsp", "include", "forward", "path", "template",
)

# Framework names looked for in a pattern source and matched against imports
FRAMEWORK_HINTS: tuple[str, ...] = ("struts", "spring", "hibernate", "jsp")

# -----------------------------------------------------------------------------
# Repository Exclude Patterns
# -----------------------------------------------------------------------------

REPO_EXCLUDE_PATTERNS: list[str] = [
    ".git/*",
    ".idea/*",
    ".svn/*",
    "target/*",
    "build/*",
    "out/*",
    "node_modules/*",
    "__pycache__/*",
    "*.class",
    "*.jar",
    "*.pyc",
]


# ============================================================================
# USER SETTINGS - Configurable via environment variables
# ============================================================================

# -----------------------------------------------------------------------------
# API Keys (Optional - reranking degrades to vector-only without them)
# -----------------------------------------------------------------------------

GOOGLE_API_KEY: str | None = os.getenv("GOOGLE_API_KEY")

# -----------------------------------------------------------------------------
# Model Configuration
# -----------------------------------------------------------------------------

MODEL_FAST: str = os.getenv("MODEL_FAST", "gemini-2.0-flash-lite")

# Embedding model
EMBEDDING_MODEL: str = os.getenv(
    "EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2"
)
EMBEDDING_BATCH_SIZE: int = int(os.getenv("EMBEDDING_BATCH_SIZE", "32"))
EMBEDDING_WORKERS: int = int(os.getenv("EMBEDDING_WORKERS", "4"))

# Sentence Transformers cache
SENTENCE_TRANSFORMERS_HOME: str = os.getenv(
    "SENTENCE_TRANSFORMERS_HOME", str(DATA_DIR / "sentence_transformers_cache")
)
os.environ.setdefault("SENTENCE_TRANSFORMERS_HOME", SENTENCE_TRANSFORMERS_HOME)

# -----------------------------------------------------------------------------
# LLM Parameters
# -----------------------------------------------------------------------------

LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.1"))
_llm_max_tokens_env = os.getenv("LLM_MAX_TOKENS")
LLM_MAX_TOKENS: int | None = int(_llm_max_tokens_env) if _llm_max_tokens_env else None
LLM_TIMEOUT: int = int(os.getenv("LLM_TIMEOUT", "60"))
LLM_MAX_RETRIES: int = int(os.getenv("LLM_MAX_RETRIES", "1"))
LLM_TOP_P: float = float(os.getenv("LLM_TOP_P", "0.95"))
LLM_TOP_K: int = int(os.getenv("LLM_TOP_K", "40"))

# -----------------------------------------------------------------------------
# BM25 Lexical Index
# -----------------------------------------------------------------------------

BM25_K1: float = float(os.getenv("BM25_K1", "1.2"))
BM25_B: float = float(os.getenv("BM25_B", "0.75"))
BM25_MIN_TOKEN_LENGTH: int = int(os.getenv("BM25_MIN_TOKEN_LENGTH", "2"))
BM25_SPLIT_CAMELCASE: bool = os.getenv("BM25_SPLIT_CAMELCASE", "true").lower() == "true"
BM25_SPLIT_SNAKE_CASE: bool = (
    os.getenv("BM25_SPLIT_SNAKE_CASE", "true").lower() == "true"
)
BM25_KEEP_HEX_CODES: bool = os.getenv("BM25_KEEP_HEX_CODES", "true").lower() == "true"
BM25_REMOVE_STOPWORDS: bool = (
    os.getenv("BM25_REMOVE_STOPWORDS", "false").lower() == "true"
)
LEXICAL_MAX_SEGMENTS: int = int(os.getenv("LEXICAL_MAX_SEGMENTS", "10"))

# -----------------------------------------------------------------------------
# Vector Index
# -----------------------------------------------------------------------------

# Above this many entries an HNSW index preselects candidates
VECTOR_ANN_THRESHOLD: int = int(os.getenv("VECTOR_ANN_THRESHOLD", "50000"))
FAISS_HNSW_M: int = int(os.getenv("FAISS_HNSW_M", "32"))
FAISS_HNSW_EF_SEARCH: int = int(os.getenv("FAISS_HNSW_EF_SEARCH", "128"))
VECTOR_ANN_OVERFETCH: int = int(os.getenv("VECTOR_ANN_OVERFETCH", "4"))

# -----------------------------------------------------------------------------
# Relationship Graph Weights
# -----------------------------------------------------------------------------

GRAPH_PACKAGE_WEIGHT: float = float(os.getenv("GRAPH_PACKAGE_WEIGHT", "0.3"))
GRAPH_CALL_WEIGHT: float = float(os.getenv("GRAPH_CALL_WEIGHT", "0.4"))
GRAPH_IMPORT_WEIGHT: float = float(os.getenv("GRAPH_IMPORT_WEIGHT", "0.2"))
GRAPH_MAPPING_WEIGHT: float = float(os.getenv("GRAPH_MAPPING_WEIGHT", "0.3"))
GRAPH_COOCCURRENCE_WEIGHT: float = float(os.getenv("GRAPH_COOCCURRENCE_WEIGHT", "0.1"))

PATTERN_KIND_WEIGHT: float = float(os.getenv("PATTERN_KIND_WEIGHT", "0.4"))
PATTERN_API_WEIGHT: float = float(os.getenv("PATTERN_API_WEIGHT", "0.3"))
PATTERN_SIGNATURE_WEIGHT: float = float(os.getenv("PATTERN_SIGNATURE_WEIGHT", "0.2"))
PATTERN_FRAMEWORK_WEIGHT: float = float(os.getenv("PATTERN_FRAMEWORK_WEIGHT", "0.1"))

# -----------------------------------------------------------------------------
# Retrieval Pipeline
# -----------------------------------------------------------------------------

PREFILTER_SIZE: int = int(os.getenv("PREFILTER_SIZE", "100"))
VECTOR_RECALL_SIZE: int = int(os.getenv("VECTOR_RECALL_SIZE", "50"))
VECTOR_SIMILARITY_THRESHOLD: float = float(os.getenv("VECTOR_SIMILARITY_THRESHOLD", "0.3"))
FINAL_RESULT_SIZE: int = int(os.getenv("FINAL_RESULT_SIZE", "10"))

# Stage 2 blend and retention
GRAPH_LEXICAL_BLEND: float = float(os.getenv("GRAPH_LEXICAL_BLEND", "0.7"))
GRAPH_STRUCTURAL_BLEND: float = float(os.getenv("GRAPH_STRUCTURAL_BLEND", "0.3"))
GRAPH_RETENTION_RATIO: float = float(os.getenv("GRAPH_RETENTION_RATIO", "0.8"))

# Pattern-matching variant
PATTERN_RETENTION_RATIO: float = float(os.getenv("PATTERN_RETENTION_RATIO", "0.5"))
PATTERN_MIN_RETAINED: int = int(os.getenv("PATTERN_MIN_RETAINED", "5"))
PATTERN_THRESHOLD_FACTOR: float = float(os.getenv("PATTERN_THRESHOLD_FACTOR", "0.8"))
PATTERN_SIZE_MULTIPLIER: int = int(os.getenv("PATTERN_SIZE_MULTIPLIER", "2"))
PATTERN_MAX_IDENTIFIERS: int = int(os.getenv("PATTERN_MAX_IDENTIFIERS", "20"))

# -----------------------------------------------------------------------------
# Reranking
# -----------------------------------------------------------------------------

RERANK_ENABLED: bool = os.getenv("RERANK_ENABLED", "true").lower() == "true"
RERANK_MODEL: str = os.getenv("RERANK_MODEL", MODEL_FAST)
RERANK_TEMPERATURE: float = float(os.getenv("RERANK_TEMPERATURE", "0.0"))
RERANK_MAX_CANDIDATES: int = int(os.getenv("RERANK_MAX_CANDIDATES", "20"))
RERANK_MAX_CONTENT_CHARS: int = int(os.getenv("RERANK_MAX_CONTENT_CHARS", "500"))
RERANK_VECTOR_WEIGHT: float = float(os.getenv("RERANK_VECTOR_WEIGHT", "0.4"))
RERANK_LLM_WEIGHT: float = float(os.getenv("RERANK_LLM_WEIGHT", "0.6"))
RERANK_TIMEOUT: float = float(os.getenv("RERANK_TIMEOUT", "30"))

# -----------------------------------------------------------------------------
# Indexing
# -----------------------------------------------------------------------------

INDEXING_WORKERS: int = int(os.getenv("INDEXING_WORKERS", "4"))
SHOW_PROGRESS: bool = os.getenv("SHOW_PROGRESS", "false").lower() == "true"

# -----------------------------------------------------------------------------
# Output Settings
# -----------------------------------------------------------------------------

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# ============================================================================
# VALIDATION & INITIALIZATION
# ============================================================================

if not 0.0 <= GRAPH_RETENTION_RATIO <= 1.0:
    raise ValueError(
        f"Invalid GRAPH_RETENTION_RATIO: {GRAPH_RETENTION_RATIO}. Must be within [0, 1]"
    )

if RERANK_MAX_CANDIDATES < 1:
    raise ValueError(f"Invalid RERANK_MAX_CANDIDATES: {RERANK_MAX_CANDIDATES}. Must be >= 1")


def ensure_data_dirs() -> None:
    """Create the index directories used by the CLI."""
    LEXICAL_INDEX_DIR.mkdir(parents=True, exist_ok=True)
    VECTOR_SNAPSHOT_FILE.parent.mkdir(parents=True, exist_ok=True)


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    # === SYSTEM CONSTANTS ===
    # Paths
    "PROJECT_ROOT",
    "DATA_DIR",
    "INDEX_DIR",
    "LEXICAL_INDEX_DIR",
    "VECTOR_SNAPSHOT_FILE",
    "CHUNK_STORE_FILE",
    # Tokenizer and hint constants
    "BM25_STOPWORDS",
    "JAVA_KEYWORDS",
    "ROUTING_KEY_MARKERS",
    "FRAMEWORK_HINTS",
    "REPO_EXCLUDE_PATTERNS",
    # === USER SETTINGS ===
    "GOOGLE_API_KEY",
    # Models
    "MODEL_FAST",
    "EMBEDDING_MODEL",
    "EMBEDDING_BATCH_SIZE",
    "EMBEDDING_WORKERS",
    "SENTENCE_TRANSFORMERS_HOME",
    # LLM Parameters
    "LLM_TEMPERATURE",
    "LLM_MAX_TOKENS",
    "LLM_TIMEOUT",
    "LLM_MAX_RETRIES",
    "LLM_TOP_P",
    "LLM_TOP_K",
    # BM25
    "BM25_K1",
    "BM25_B",
    "BM25_MIN_TOKEN_LENGTH",
    "BM25_SPLIT_CAMELCASE",
    "BM25_SPLIT_SNAKE_CASE",
    "BM25_KEEP_HEX_CODES",
    "BM25_REMOVE_STOPWORDS",
    "LEXICAL_MAX_SEGMENTS",
    # Vector
    "VECTOR_ANN_THRESHOLD",
    "FAISS_HNSW_M",
    "FAISS_HNSW_EF_SEARCH",
    "VECTOR_ANN_OVERFETCH",
    # Graph
    "GRAPH_PACKAGE_WEIGHT",
    "GRAPH_CALL_WEIGHT",
    "GRAPH_IMPORT_WEIGHT",
    "GRAPH_MAPPING_WEIGHT",
    "GRAPH_COOCCURRENCE_WEIGHT",
    "PATTERN_KIND_WEIGHT",
    "PATTERN_API_WEIGHT",
    "PATTERN_SIGNATURE_WEIGHT",
    "PATTERN_FRAMEWORK_WEIGHT",
    # Retrieval pipeline
    "PREFILTER_SIZE",
    "VECTOR_RECALL_SIZE",
    "VECTOR_SIMILARITY_THRESHOLD",
    "FINAL_RESULT_SIZE",
    "GRAPH_LEXICAL_BLEND",
    "GRAPH_STRUCTURAL_BLEND",
    "GRAPH_RETENTION_RATIO",
    "PATTERN_RETENTION_RATIO",
    "PATTERN_MIN_RETAINED",
    "PATTERN_THRESHOLD_FACTOR",
    "PATTERN_SIZE_MULTIPLIER",
    "PATTERN_MAX_IDENTIFIERS",
    # Reranking
    "RERANK_ENABLED",
    "RERANK_MODEL",
    "RERANK_TEMPERATURE",
    "RERANK_MAX_CANDIDATES",
    "RERANK_MAX_CONTENT_CHARS",
    "RERANK_VECTOR_WEIGHT",
    "RERANK_LLM_WEIGHT",
    "RERANK_TIMEOUT",
    # Indexing
    "INDEXING_WORKERS",
    "SHOW_PROGRESS",
    # Output
    "LOG_LEVEL",
    "LOG_FORMAT",
    "ensure_data_dirs",
]
