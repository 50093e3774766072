"""Chunk store: canonical registry of indexed chunks.

The store owns no index. It keeps the id -> Chunk mapping that the indexing
pipeline writes once per commit and that the relationship graph is rebuilt
from, and persists it as a JSON list of chunk records.

Author: Hay Hoffman
"""

import json
import logging
import os
import threading
from pathlib import Path

from models.chunk import Chunk, create_chunk_from_dict
from src.exceptions import InvalidChunk, StoreIOError

logger = logging.getLogger(__name__)

__all__ = ["ChunkStore"]


class ChunkStore:
    """In-memory chunk registry with JSON persistence.

    Attributes:
        chunk_cache: Mapping of chunk_id -> Chunk, in insertion order
    """

    def __init__(self, chunks_file: Path | None = None):
        """Initialize chunk store.

        Args:
            chunks_file: Optional JSON file to load chunks from (missing file = empty store)
        """
        self.chunk_cache: dict[str, Chunk] = {}
        self._lock = threading.Lock()

        if chunks_file is not None and Path(chunks_file).exists():
            self.load(chunks_file)

    def put(self, chunk: Chunk) -> None:
        """Register a chunk.

        Re-putting an identical chunk is a no-op.

        Raises:
            InvalidChunk: If id or content is empty, or the id is already
                taken by a chunk with different content
        """
        if not chunk.id or not chunk.id.strip():
            raise InvalidChunk("Chunk id cannot be empty")
        if not chunk.content or not chunk.content.strip():
            raise InvalidChunk("Chunk content cannot be empty", chunk_id=chunk.id)

        with self._lock:
            existing = self.chunk_cache.get(chunk.id)
            if existing is not None and existing.content != chunk.content:
                raise InvalidChunk(
                    f"Chunk id collision: {chunk.id} already maps to different content "
                    f"({existing.citation})",
                    chunk_id=chunk.id,
                )
            self.chunk_cache[chunk.id] = chunk

    def get(self, chunk_id: str) -> Chunk | None:
        """Return the chunk with ``chunk_id`` or None."""
        return self.chunk_cache.get(chunk_id)

    def exists(self, chunk_id: str) -> bool:
        return chunk_id in self.chunk_cache

    def remove(self, chunk_id: str) -> bool:
        """Remove a chunk, returning True if it was present."""
        with self._lock:
            return self.chunk_cache.pop(chunk_id, None) is not None

    def all(self) -> list[Chunk]:
        """All chunks in insertion order."""
        return list(self.chunk_cache.values())

    def clear(self) -> None:
        with self._lock:
            self.chunk_cache.clear()

    def __len__(self) -> int:
        return len(self.chunk_cache)

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self.chunk_cache

    def load(self, chunks_file: Path) -> int:
        """Load chunks from a JSON file.

        Invalid records are skipped with a warning.

        Args:
            chunks_file: Path to JSON file containing a list of chunk records

        Returns:
            Number of chunks loaded

        Raises:
            StoreIOError: If the file cannot be read or is not valid JSON
        """
        chunks_file = Path(chunks_file)
        try:
            with open(chunks_file, encoding='utf-8') as f:
                chunks_data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load chunks from {chunks_file}: {e}")
            raise StoreIOError(f"Failed to load chunks: {e}", path=str(chunks_file)) from e

        loaded_count = 0
        for chunk_dict in chunks_data:
            try:
                self.put(create_chunk_from_dict(chunk_dict))
                loaded_count += 1
            except InvalidChunk as e:
                logger.warning(f"Skipping invalid chunk in {chunks_file.name}: {e}")

        logger.info(f"Loaded {loaded_count} chunks from {chunks_file.name}")
        return loaded_count

    def save(self, chunks_file: Path) -> None:
        """Write all chunks to a JSON file (atomic replace).

        Raises:
            StoreIOError: If the file cannot be written
        """
        chunks_file = Path(chunks_file)
        records = [chunk.model_dump(mode="json") for chunk in self.all()]
        tmp_file = chunks_file.with_suffix(chunks_file.suffix + ".tmp")

        try:
            chunks_file.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_file, "w", encoding="utf-8") as f:
                json.dump(records, f, ensure_ascii=False)
            os.replace(tmp_file, chunks_file)
        except OSError as e:
            logger.error(f"Failed to save chunks to {chunks_file}: {e}")
            raise StoreIOError(f"Failed to save chunks: {e}", path=str(chunks_file)) from e

        logger.info(f"Saved {len(records)} chunks to {chunks_file}")
