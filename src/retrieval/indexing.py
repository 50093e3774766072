"""Indexing pipeline: chunk producers and the parallel indexer.

Chunks come from pluggable producers (one per source-file format). The indexer
validates, tokenizes and embeds them in a fixed-size thread pool, then writes
every index behind a single commit barrier:

    vector index -> lexical index -> chunk store -> persistence -> graph rebuild

The vector write goes first because it validates every embedding width before
touching anything, so a DimensionMismatch aborts the whole batch with no index
modified.

Author: Hay Hoffman
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, Protocol, runtime_checkable

from tqdm import tqdm

from models.chunk import Chunk, create_chunk_from_dict, make_chunk_id
from models.retrieval import IndexingResult
from settings import INDEXING_WORKERS, REPO_EXCLUDE_PATTERNS, SHOW_PROGRESS
from src.exceptions import InvalidChunk, StoreIOError
from src.retrieval.chunk_store import ChunkStore
from src.retrieval.code_graph import CodeGraph
from src.retrieval.lexical_index import IndexEntry, LexicalIndex
from src.retrieval.vector_index import VectorIndex

logger = logging.getLogger(__name__)

__all__ = ["ChunkProducer", "JsonChunkProducer", "CodeIndexer", "should_exclude"]


# ============================================================================
# PRODUCERS
# ============================================================================

@runtime_checkable
class ChunkProducer(Protocol):
    """Turns one source file into chunks.

    When several producers accept a file, the highest ``priority`` wins.
    """

    priority: int

    def can_parse(self, path: Path) -> bool:
        ...

    def parse(self, path: Path) -> list[Chunk]:
        ...


class JsonChunkProducer:
    """Reads pre-chunked ``*.chunks.json`` files.

    The file holds a list of chunk records (or ``{"chunks": [...]}``). Records
    without an id get a stable one from ``make_chunk_id``; invalid records are
    skipped with a warning.
    """

    priority = 10
    suffix = ".chunks.json"

    def can_parse(self, path: Path) -> bool:
        return path.name.endswith(self.suffix)

    def parse(self, path: Path) -> list[Chunk]:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreIOError(f"Failed to read chunk file: {e}", path=str(path)) from e

        records = data.get("chunks", []) if isinstance(data, dict) else data
        chunks = []
        for record in records:
            if not isinstance(record, dict):
                logger.warning(f"Skipping non-object chunk record in {path.name}")
                continue
            record = dict(record)
            if not record.get("id") and record.get("content"):
                record["id"] = make_chunk_id(
                    record.get("file_path", ""),
                    record["content"],
                    record.get("qualified_name"),
                    record.get("start_line", 0),
                )
            try:
                chunks.append(create_chunk_from_dict(record))
            except InvalidChunk as e:
                logger.warning(f"Skipping invalid chunk in {path.name}: {e}")

        logger.debug(f"Parsed {len(chunks)} chunks from {path.name}")
        return chunks


def should_exclude(file_path: Path, repo_root: Path, exclude_patterns: list[str]) -> bool:
    """Check if a file should be skipped.

    ``dir/*`` patterns exclude any file below a directory of that name; other
    patterns are globs matched against the relative path and the file name.
    """
    try:
        relative = file_path.relative_to(repo_root)
    except ValueError:
        return True

    relative_str = relative.as_posix()
    for pattern in exclude_patterns:
        if pattern.endswith("/*"):
            if pattern[:-2] in relative.parts[:-1]:
                return True
        elif fnmatch(relative_str, pattern) or fnmatch(relative.name, pattern):
            return True
    return False


# ============================================================================
# INDEXER
# ============================================================================

class CodeIndexer:
    """Feeds chunks into every index with one commit per batch.

    Attributes:
        lexical_index: BM25 index (required)
        vector_index: Optional vector index
        graph: Optional relationship graph, rebuilt after each commit
        chunk_store: Canonical chunk registry
        producers: Registered chunk producers
    """

    def __init__(
        self,
        lexical_index: LexicalIndex,
        vector_index: VectorIndex | None = None,
        graph: CodeGraph | None = None,
        chunk_store: ChunkStore | None = None,
        producers: Iterable[ChunkProducer] | None = None,
        workers: int = INDEXING_WORKERS,
        chunk_store_file: Path | None = None,
        exclude_patterns: list[str] | None = None,
        show_progress: bool = SHOW_PROGRESS,
    ):
        self.lexical_index = lexical_index
        self.vector_index = vector_index
        self.graph = graph
        self.chunk_store = chunk_store if chunk_store is not None else ChunkStore()
        self.producers: list[ChunkProducer] = list(producers) if producers is not None else [JsonChunkProducer()]
        self.workers = max(1, workers)
        self.chunk_store_file = Path(chunk_store_file) if chunk_store_file is not None else None
        self.exclude_patterns = exclude_patterns if exclude_patterns is not None else REPO_EXCLUDE_PATTERNS
        self.show_progress = show_progress

        # Serializes commit barriers from concurrent index_chunks calls
        self._commit_lock = threading.Lock()

    def register_producer(self, producer: ChunkProducer) -> None:
        """Add a producer for another source format."""
        self.producers.append(producer)

    def producer_for(self, path: Path) -> ChunkProducer | None:
        """Highest-priority producer that accepts ``path``."""
        candidates = [p for p in self.producers if p.can_parse(path)]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.priority)

    # =========================================================================
    # Chunks
    # =========================================================================

    def index_chunks(self, chunks: Iterable[Chunk]) -> IndexingResult:
        """Index a batch of chunks.

        Invalid chunks (empty id or content, id collision with different
        content) are skipped and reported. Everything else is visible to
        searches once this returns.

        Returns:
            IndexingResult with counts and per-item errors

        Raises:
            DimensionMismatch: If an embedding width disagrees with the vector
                index (nothing is written)
        """
        started = time.perf_counter()
        chunks = list(chunks)
        errors: list[str] = []
        accepted = self._dedupe(chunks, errors)

        # Per-chunk preparation in the pool; results keep input order
        entries: list[IndexEntry] = []
        valid: list[Chunk] = []
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="index") as executor:
            futures = [executor.submit(LexicalIndex.prepare, chunk) for chunk in accepted]
            for chunk, future in zip(accepted, futures):
                try:
                    entries.append(future.result())
                    valid.append(chunk)
                except InvalidChunk as e:
                    errors.append(str(e))

        vectors = self.vector_index.embed_chunks(valid) if self.vector_index is not None else []

        committed, persisted = self._commit(valid, entries, vectors, errors)

        result = IndexingResult(
            chunks_received=len(chunks),
            chunks_indexed=committed,
            chunks_skipped=len(chunks) - committed,
            errors=errors,
            lexical_count=self.lexical_index.count(),
            vector_count=self.vector_index.size() if self.vector_index is not None else 0,
            persisted=persisted,
            elapsed_seconds=time.perf_counter() - started,
        )
        logger.info(
            f"Indexed {result.chunks_indexed}/{result.chunks_received} chunks "
            f"({result.chunks_skipped} skipped) in {result.elapsed_seconds:.2f}s"
        )
        return result

    def _dedupe(self, chunks: list[Chunk], errors: list[str]) -> list[Chunk]:
        """Drop repeated ids within the batch and collisions with stored chunks."""
        accepted: dict[str, Chunk] = {}
        for chunk in chunks:
            previous = accepted.get(chunk.id) or self.chunk_store.get(chunk.id)
            if previous is not None and previous.content != chunk.content:
                errors.append(f"Chunk id collision: {chunk.id} ({chunk.citation})")
                continue
            if chunk.id in accepted:
                continue
            accepted[chunk.id] = chunk
        return list(accepted.values())

    def _commit(
        self,
        chunks: list[Chunk],
        entries: list[IndexEntry],
        vectors: list,
        errors: list[str],
    ) -> tuple[int, bool]:
        """Write all indices under the commit lock.

        Returns:
            (number of chunks written, False if persisting failed)
        """
        persisted = True
        with self._commit_lock:
            chunks, entries, vectors = self._drop_collisions(chunks, entries, vectors, errors)

            if self.vector_index is not None:
                self.vector_index.insert_embedded(chunks, vectors)

            try:
                self.lexical_index.insert_prepared(entries)
            except StoreIOError as e:
                logger.error(f"Lexical index persistence failed: {e}")
                errors.append(str(e))
                persisted = False

            for chunk in chunks:
                self.chunk_store.put(chunk)

            try:
                if self.vector_index is not None and self.vector_index.snapshot_path is not None:
                    self.vector_index.save_to_disk()
                if self.chunk_store_file is not None:
                    self.chunk_store.save(self.chunk_store_file)
            except StoreIOError as e:
                logger.error(f"Index persistence failed: {e}")
                errors.append(str(e))
                persisted = False

            if self.graph is not None:
                self.graph.build(self.chunk_store.all())

        return len(chunks), persisted

    def _drop_collisions(
        self,
        chunks: list[Chunk],
        entries: list[IndexEntry],
        vectors: list,
        errors: list[str],
    ) -> tuple[list[Chunk], list[IndexEntry], list]:
        """Re-check ids against the store; caller holds the commit lock.

        A concurrent batch may have committed the same id with other content
        since ``_dedupe`` ran.
        """
        keep = []
        for position, chunk in enumerate(chunks):
            stored = self.chunk_store.get(chunk.id)
            if stored is not None and stored.content != chunk.content:
                logger.warning(f"Chunk id collision at commit: {chunk.id}")
                errors.append(f"Chunk id collision: {chunk.id} ({chunk.citation})")
                continue
            keep.append(position)

        if len(keep) == len(chunks):
            return chunks, entries, vectors
        return (
            [chunks[i] for i in keep],
            [entries[i] for i in keep],
            [vectors[i] for i in keep] if vectors else vectors,
        )

    # =========================================================================
    # Files
    # =========================================================================

    def index_directory(self, root: Path) -> IndexingResult:
        """Parse every supported file under ``root`` and index the chunks.

        Raises:
            FileNotFoundError: If ``root`` is not a directory
        """
        root = Path(root)
        if not root.is_dir():
            raise FileNotFoundError(f"Not a directory: {root}")

        files = [
            path for path in sorted(root.rglob("*"))
            if path.is_file() and not should_exclude(path, root, self.exclude_patterns)
        ]
        jobs = [(path, self.producer_for(path)) for path in files]
        jobs = [(path, producer) for path, producer in jobs if producer is not None]
        logger.info(f"Found {len(jobs)} parseable files under {root} ({len(files)} scanned)")

        parsed: dict[int, list[Chunk]] = {}
        errors: list[str] = []
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="parse") as executor:
            futures = {
                executor.submit(producer.parse, path): position
                for position, (path, producer) in enumerate(jobs)
            }
            completed = as_completed(futures)
            if self.show_progress:
                completed = tqdm(completed, total=len(futures), desc="Parsing files")

            for future in completed:
                position = futures[future]
                try:
                    parsed[position] = future.result()
                except (StoreIOError, OSError, ValueError) as e:
                    path = jobs[position][0]
                    logger.warning(f"Failed to parse {path}: {e}")
                    errors.append(f"{path}: {e}")

        chunks = [chunk for position in sorted(parsed) for chunk in parsed[position]]
        result = self.index_chunks(chunks)
        return result.model_copy(update={
            "files_scanned": len(files),
            "errors": errors + result.errors,
        })
