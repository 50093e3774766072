"""Cosine-similarity vector index over chunk embeddings.

This module provides the dense side of hybrid retrieval:
- Embeddings of the same composite searchable text the lexical index uses
- Exact (numpy) cosine scoring, with an HNSW faiss index preselecting
  candidates once the index grows past VECTOR_ANN_THRESHOLD entries
- Snapshot swap on commit so readers never see a half-written batch
- Single-file pickle snapshot (id -> vector, id -> chunk) loaded at startup

Author: Hay Hoffman
"""

import logging
import os
import pickle
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Sequence

import numpy as np

from models.chunk import Chunk, create_chunk_from_dict
from models.retrieval import SimilarityResult, VectorEntry
from settings import (
    EMBEDDING_WORKERS,
    FAISS_HNSW_EF_SEARCH,
    FAISS_HNSW_M,
    VECTOR_ANN_OVERFETCH,
    VECTOR_ANN_THRESHOLD,
)
from src.exceptions import DimensionMismatch, InvalidChunk, StoreIOError
from src.retrieval.embeddings import EmbeddingFunction, SentenceTransformerEmbedder

logger = logging.getLogger(__name__)

__all__ = ["VectorIndex", "cosine_similarity"]

SNAPSHOT_VERSION = 1


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors.

    Returns 0.0 when either vector has zero norm.

    Raises:
        DimensionMismatch: If the vectors differ in length
    """
    a_arr = np.asarray(a, dtype=np.float64).ravel()
    b_arr = np.asarray(b, dtype=np.float64).ravel()
    if a_arr.shape != b_arr.shape:
        raise DimensionMismatch(len(a_arr), len(b_arr))

    norm_a = float(np.linalg.norm(a_arr))
    norm_b = float(np.linalg.norm(b_arr))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    return float(np.clip(np.dot(a_arr, b_arr) / (norm_a * norm_b), -1.0, 1.0))


@dataclass(frozen=True)
class _VectorSnapshot:
    """Immutable searchable view of one index generation."""

    generation: int
    ids: tuple[str, ...]
    chunks: tuple[Chunk, ...]
    matrix: np.ndarray
    norms: np.ndarray
    ann_index: Any = None


class VectorIndex:
    """Dense-vector store with cosine nearest-neighbour search.

    Attributes:
        embedding_fn: Callable turning text into a fixed-length vector
        snapshot_path: Optional pickle file used by save_to_disk / startup load
        dimension: Embedding width, fixed on first insert (or by the snapshot)
    """

    def __init__(
        self,
        embedding_fn: EmbeddingFunction | None = None,
        snapshot_path: Path | None = None,
        dimension: int | None = None,
        ann_threshold: int = VECTOR_ANN_THRESHOLD,
        max_workers: int = EMBEDDING_WORKERS,
    ):
        """Initialize vector index.

        Args:
            embedding_fn: Embedding function (default: SentenceTransformerEmbedder)
            snapshot_path: Snapshot file; loaded now if it exists (missing = cold start)
            dimension: Expected embedding width (inferred from the first vector if None)
            ann_threshold: Entry count from which an HNSW index preselects candidates
            max_workers: Threads used to embed batches when the embedding
                function has no batch method

        Raises:
            StoreIOError: If an existing snapshot cannot be read
        """
        self.embedding_fn = embedding_fn or SentenceTransformerEmbedder()
        self.snapshot_path = Path(snapshot_path) if snapshot_path is not None else None
        self.dimension = dimension
        self.ann_threshold = ann_threshold
        self.max_workers = max_workers

        self._write_lock = threading.RLock()
        self._vectors: dict[str, np.ndarray] = {}
        self._inserted_at: dict[str, float] = {}
        self._chunks: dict[str, Chunk] = {}
        self._generation = 0
        self._dirty = False
        self._snapshot = self._empty_snapshot(0)

        if self.snapshot_path is not None and self.snapshot_path.exists():
            self._load()
        elif self.snapshot_path is not None:
            logger.info(f"No vector snapshot at {self.snapshot_path}, cold start")

    # =========================================================================
    # Embedding
    # =========================================================================

    def embed_text(self, text: str) -> np.ndarray:
        """Embed text into a 1-D float vector."""
        return np.asarray(self.embedding_fn(text), dtype=np.float64).ravel()

    def embed_chunks(self, chunks: list[Chunk]) -> list[np.ndarray]:
        """Embed the searchable text of many chunks.

        Uses the embedding function's ``embed_batch`` when available, otherwise
        a thread pool.
        """
        texts = [chunk.searchable_text for chunk in chunks]
        if not texts:
            return []

        embed_batch = getattr(self.embedding_fn, "embed_batch", None)
        if callable(embed_batch):
            matrix = np.asarray(embed_batch(texts), dtype=np.float64)
            return [row.ravel() for row in matrix]

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            return list(executor.map(self.embed_text, texts))

    # =========================================================================
    # Writes
    # =========================================================================

    def insert(self, chunk: Chunk) -> None:
        """Embed and insert a single chunk."""
        self.insert_embedded([chunk], [self.embed_text(chunk.searchable_text)])

    def insert_batch(self, chunks: Iterable[Chunk]) -> int:
        """Embed chunks in parallel, insert them in one commit and save the snapshot.

        Returns:
            Number of chunks inserted

        Raises:
            DimensionMismatch: If any embedding has the wrong width (nothing is inserted)
            StoreIOError: If the snapshot cannot be written (entries stay in memory)
        """
        chunks = list(chunks)
        inserted = self.insert_embedded(chunks, self.embed_chunks(chunks))
        if self.snapshot_path is not None:
            self.save_to_disk()
        return inserted

    def insert_embedded(self, chunks: list[Chunk], vectors: list[np.ndarray]) -> int:
        """Insert pre-computed embeddings as a single atomic commit.

        Raises:
            DimensionMismatch: If any vector width differs from the index width
        """
        if len(chunks) != len(vectors):
            raise ValueError(
                f"Got {len(chunks)} chunks but {len(vectors)} vectors"
            )

        with self._write_lock:
            dimension = self.dimension
            for chunk, vector in zip(chunks, vectors):
                if not chunk.id or not chunk.content.strip():
                    raise InvalidChunk("Chunk id and content must be non-empty", chunk_id=chunk.id)
                if dimension is None:
                    dimension = len(vector)
                elif len(vector) != dimension:
                    raise DimensionMismatch(dimension, len(vector))

            now = time.time()
            for chunk, vector in zip(chunks, vectors):
                self._vectors[chunk.id] = np.asarray(vector, dtype=np.float64).ravel()
                self._inserted_at[chunk.id] = now
                self._chunks[chunk.id] = chunk

            self.dimension = dimension
            if chunks:
                self._generation += 1
                self._dirty = True

        logger.debug(f"Inserted {len(chunks)} vectors (dimension={self.dimension})")
        return len(chunks)

    def remove(self, chunk_id: str) -> bool:
        """Remove a chunk's vector, returning True if it was present."""
        with self._write_lock:
            if self._vectors.pop(chunk_id, None) is None:
                return False
            self._inserted_at.pop(chunk_id, None)
            self._chunks.pop(chunk_id, None)
            self._generation += 1
            self._dirty = True
            return True

    def clear(self) -> None:
        with self._write_lock:
            self._vectors.clear()
            self._inserted_at.clear()
            self._chunks.clear()
            self._generation += 1
            self._dirty = True
        logger.info("Cleared vector index")

    # =========================================================================
    # Reads
    # =========================================================================

    def find_similar(
        self,
        query_text: str,
        max_results: int = 10,
        min_similarity: float = 0.0,
    ) -> list[SimilarityResult]:
        """Find chunks most similar to ``query_text``.

        Args:
            query_text: Text to embed and compare against
            max_results: Maximum number of results
            min_similarity: Inclusive lower bound on cosine similarity

        Returns:
            Results in descending similarity order

        Raises:
            DimensionMismatch: If the query embedding width differs from the index
        """
        if self.size() == 0 or max_results <= 0:
            return []
        return self.find_similar_to_vector(
            self.embed_text(query_text), max_results, min_similarity
        )

    def find_similar_to_chunk(
        self,
        chunk_id: str,
        max_results: int = 10,
        min_similarity: float = 0.0,
    ) -> list[SimilarityResult]:
        """Find chunks similar to a stored chunk, excluding the chunk itself."""
        vector = self._vectors.get(chunk_id)
        if vector is None:
            logger.warning(f"Chunk not found in vector index: {chunk_id}")
            return []
        return self.find_similar_to_vector(
            vector, max_results, min_similarity, exclude_id=chunk_id
        )

    def find_similar_to_vector(
        self,
        vector: Sequence[float],
        max_results: int = 10,
        min_similarity: float = 0.0,
        exclude_id: str | None = None,
    ) -> list[SimilarityResult]:
        """Find chunks similar to a raw query vector.

        Raises:
            DimensionMismatch: If the vector width differs from the index
        """
        snapshot = self._current_snapshot()
        if not snapshot.ids or max_results <= 0:
            return []

        query = np.asarray(vector, dtype=np.float64).ravel()
        if query.shape[0] != snapshot.matrix.shape[1]:
            raise DimensionMismatch(snapshot.matrix.shape[1], query.shape[0])

        if snapshot.ann_index is not None:
            positions = self._ann_candidates(snapshot, query, max_results + 1)
        else:
            positions = np.arange(len(snapshot.ids))

        sims = _cosine_rows(snapshot.matrix[positions], snapshot.norms[positions], query)

        # Stable sort keeps insertion order for equal similarities
        order = np.argsort(-sims, kind="stable")

        results: list[SimilarityResult] = []
        for rank in order:
            similarity = float(sims[rank])
            if similarity < min_similarity:
                break
            chunk_id = snapshot.ids[int(positions[rank])]
            if chunk_id == exclude_id:
                continue
            chunk = snapshot.chunks[int(positions[rank])]
            results.append(
                SimilarityResult(chunk_id=chunk_id, chunk=chunk, similarity=similarity)
            )
            if len(results) >= max_results:
                break

        return results

    def get_chunk(self, chunk_id: str) -> Chunk | None:
        return self._chunks.get(chunk_id)

    def get_entry(self, chunk_id: str) -> VectorEntry | None:
        """Return the stored (chunk_id, vector, inserted_at) record."""
        vector = self._vectors.get(chunk_id)
        if vector is None:
            return None
        return VectorEntry(
            chunk_id=chunk_id,
            vector=tuple(float(x) for x in vector),
            inserted_at=self._inserted_at.get(chunk_id, 0.0),
        )

    def contains(self, chunk_id: str) -> bool:
        return chunk_id in self._vectors

    def size(self) -> int:
        return len(self._vectors)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._vectors

    # =========================================================================
    # Snapshot management
    # =========================================================================

    def _current_snapshot(self) -> _VectorSnapshot:
        """Return the searchable view, rebuilding it if a write made it stale."""
        snapshot = self._snapshot
        if snapshot.generation == self._generation:
            return snapshot

        with self._write_lock:
            if self._snapshot.generation != self._generation:
                self._snapshot = self._build_snapshot()
            return self._snapshot

    def _build_snapshot(self) -> _VectorSnapshot:
        """Stack vectors into a matrix (caller holds the lock)."""
        ids = tuple(chunk_id for chunk_id in self._vectors if chunk_id in self._chunks)
        if not ids:
            return self._empty_snapshot(self._generation)

        matrix = np.vstack([self._vectors[chunk_id] for chunk_id in ids])
        norms = np.linalg.norm(matrix, axis=1)

        ann_index = None
        if len(ids) >= self.ann_threshold:
            ann_index = self._build_ann_index(matrix, norms)

        logger.debug(
            f"Refreshed vector snapshot: generation={self._generation}, "
            f"{len(ids)} vectors, ann={'on' if ann_index is not None else 'off'}"
        )
        chunks = tuple(self._chunks[chunk_id] for chunk_id in ids)
        return _VectorSnapshot(self._generation, ids, chunks, matrix, norms, ann_index)

    def _empty_snapshot(self, generation: int) -> _VectorSnapshot:
        width = self.dimension or 0
        return _VectorSnapshot(generation, (), (), np.zeros((0, width)), np.zeros(0))

    @staticmethod
    def _build_ann_index(matrix: np.ndarray, norms: np.ndarray):
        """Build an HNSW inner-product index over L2-normalized vectors."""
        import faiss

        safe_norms = np.where(norms > 0, norms, 1.0)
        normalized = (matrix / safe_norms[:, None]).astype("float32")

        index = faiss.IndexHNSWFlat(matrix.shape[1], FAISS_HNSW_M, faiss.METRIC_INNER_PRODUCT)
        index.hnsw.efSearch = FAISS_HNSW_EF_SEARCH
        index.add(normalized)

        logger.info(
            f"Built HNSW index: {index.ntotal} vectors, dim={index.d}, "
            f"efSearch={FAISS_HNSW_EF_SEARCH}"
        )
        return index

    @staticmethod
    def _ann_candidates(snapshot: _VectorSnapshot, query: np.ndarray, wanted: int) -> np.ndarray:
        """Preselect candidate positions with the HNSW index."""
        norm = float(np.linalg.norm(query))
        if norm == 0.0:
            return np.arange(len(snapshot.ids))

        k = min(len(snapshot.ids), wanted * VECTOR_ANN_OVERFETCH)
        _, indices = snapshot.ann_index.search(
            (query / norm).astype("float32").reshape(1, -1), k
        )
        return np.array([int(i) for i in indices[0] if i >= 0], dtype=np.int64)

    # =========================================================================
    # Persistence
    # =========================================================================

    def save_to_disk(self, snapshot_path: Path | None = None) -> None:
        """Write the full (id -> vector, id -> chunk) snapshot.

        Raises:
            StoreIOError: If no path is configured or the file cannot be written
        """
        path = Path(snapshot_path) if snapshot_path is not None else self.snapshot_path
        if path is None:
            raise StoreIOError("No snapshot path configured for vector index")

        with self._write_lock:
            payload = {
                "version": SNAPSHOT_VERSION,
                "dimension": self.dimension,
                "entries": {
                    chunk_id: {
                        "vector": vector,
                        "inserted_at": self._inserted_at.get(chunk_id, 0.0),
                    }
                    for chunk_id, vector in self._vectors.items()
                },
                "chunks": {
                    chunk_id: chunk.model_dump(mode="json")
                    for chunk_id, chunk in self._chunks.items()
                },
            }

            tmp_path = path.with_suffix(path.suffix + ".tmp")
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "wb") as f:
                    pickle.dump(payload, f, protocol=pickle.HIGHEST_PROTOCOL)
                os.replace(tmp_path, path)
            except OSError as e:
                logger.error(f"Failed to save vector snapshot to {path}: {e}")
                raise StoreIOError(f"Failed to save vector snapshot: {e}", path=str(path)) from e

            self._dirty = False

        logger.info(f"Saved vector snapshot: {len(self._vectors)} vectors -> {path}")

    def close(self) -> None:
        """Save the snapshot if anything changed since the last save."""
        if self.snapshot_path is not None and self._dirty:
            self.save_to_disk()

    def _load(self) -> None:
        """Load the full snapshot from disk."""
        try:
            with open(self.snapshot_path, "rb") as f:
                payload = pickle.load(f)

            dimension = payload.get("dimension")
            entries = payload["entries"]
            chunks = {
                chunk_id: create_chunk_from_dict(record)
                for chunk_id, record in payload["chunks"].items()
            }
        except (OSError, EOFError, pickle.UnpicklingError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Failed to load vector snapshot from {self.snapshot_path}: {e}")
            raise StoreIOError(
                f"Failed to load vector snapshot: {e}", path=str(self.snapshot_path)
            ) from e
        except InvalidChunk as e:
            raise StoreIOError(
                f"Vector snapshot contains an invalid chunk: {e}", path=str(self.snapshot_path)
            ) from e

        if self.dimension is not None and dimension is not None and dimension != self.dimension:
            raise DimensionMismatch(self.dimension, dimension)

        with self._write_lock:
            for chunk_id, entry in entries.items():
                self._vectors[chunk_id] = np.asarray(entry["vector"], dtype=np.float64).ravel()
                self._inserted_at[chunk_id] = float(entry.get("inserted_at", 0.0))
            self._chunks.update(chunks)
            self.dimension = dimension if dimension is not None else self.dimension
            self._generation += 1

        logger.info(
            f"Loaded vector snapshot from {self.snapshot_path}: "
            f"{len(self._vectors)} vectors, dim={self.dimension}"
        )


def _cosine_rows(matrix: np.ndarray, norms: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of each row against ``query`` (0.0 for zero norms)."""
    query_norm = float(np.linalg.norm(query))
    dots = matrix @ query
    denom = norms * query_norm
    sims = np.zeros(len(dots), dtype=np.float64)
    np.divide(dots, denom, out=sims, where=denom > 0)
    return np.clip(sims, -1.0, 1.0)
