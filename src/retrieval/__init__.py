"""Retrieval module for the hybrid code retrieval engine.

This module implements the complete retrieval pipeline, including:

- Chunk store (canonical id -> chunk registry)
- Code-aware BM25 lexical index with a small query grammar
- Cosine vector index (numpy, faiss HNSW preselection for large indices)
- Code relationship graph (calls, inheritance, imports, routes, packages)
- Hybrid orchestrator (lexical -> graph -> vector -> rerank)
- External reranker adapter (LLM or local)
- Parallel indexing pipeline with pluggable chunk producers

Author: Hay Hoffman
"""

from src.retrieval.chunk_store import ChunkStore
from src.retrieval.code_graph import CodeGraph, extract_pattern_hints, extract_query_hints
from src.retrieval.embeddings import EmbeddingFunction, SentenceTransformerEmbedder
from src.retrieval.hybrid_retriever import HybridRetriever
from src.retrieval.indexing import ChunkProducer, CodeIndexer, JsonChunkProducer
from src.retrieval.lexical_index import LexicalIndex
from src.retrieval.query_parser import ParsedQuery, parse_query
from src.retrieval.reranker import LLMReranker, LocalReranker, Reranker, create_default_reranker
from src.retrieval.tokenizer import tokenize_code_aware
from src.retrieval.vector_index import VectorIndex, cosine_similarity

__all__ = [
    "ChunkStore",
    "LexicalIndex",
    "ParsedQuery",
    "parse_query",
    "tokenize_code_aware",
    "VectorIndex",
    "cosine_similarity",
    "EmbeddingFunction",
    "SentenceTransformerEmbedder",
    "CodeGraph",
    "extract_query_hints",
    "extract_pattern_hints",
    "Reranker",
    "LLMReranker",
    "LocalReranker",
    "create_default_reranker",
    "HybridRetriever",
    "ChunkProducer",
    "JsonChunkProducer",
    "CodeIndexer",
]
