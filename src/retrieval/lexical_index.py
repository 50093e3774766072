"""BM25 lexical index over chunk text.

This module implements the keyword side of hybrid retrieval:
- Code-aware tokenization of the composite searchable text of each chunk
- BM25 ranking (rank_bm25, k1=1.2, b=0.75) over three fields:
  searchable text, qualified name and file path
- Batch insert with a single commit
- Reader/writer isolation: writes update a writer-side entry map, reads use an
  immutable snapshot that is rebuilt when stale and swapped atomically
- Directory persistence as an append-only list of JSON segments

Author: Hay Hoffman
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Iterable

from rank_bm25 import BM25Plus

from models.chunk import Chunk, ChunkKind, create_chunk_from_dict
from models.retrieval import LexicalHit
from settings import BM25_B, BM25_K1, LEXICAL_MAX_SEGMENTS
from src.exceptions import InvalidChunk, StoreIOError
from src.retrieval.query_parser import ParsedQuery, parse_query
from src.retrieval.tokenizer import tokenize_code_aware

logger = logging.getLogger(__name__)

__all__ = ["IndexEntry", "LexicalIndex"]

MANIFEST_FILE = "manifest.json"
MANIFEST_VERSION = 1
_WILDCARD_CHARS = frozenset("*?[")


@dataclass(frozen=True)
class IndexEntry:
    """Per-field tokenized representation of one chunk."""

    chunk: Chunk
    tokens: tuple[str, ...]
    token_set: frozenset[str]
    name_tokens: tuple[str, ...]
    name_token_set: frozenset[str]
    path_tokens: tuple[str, ...]
    path_token_set: frozenset[str]

    @classmethod
    def from_chunk(cls, chunk: Chunk) -> "IndexEntry":
        tokens = tuple(tokenize_code_aware(chunk.searchable_text))
        name_tokens = tuple(tokenize_code_aware(chunk.qualified_name or ""))
        path_tokens = tuple(tokenize_code_aware(chunk.file_path))
        return cls(
            chunk=chunk,
            tokens=tokens,
            token_set=frozenset(tokens),
            name_tokens=name_tokens,
            name_token_set=frozenset(name_tokens),
            path_tokens=path_tokens,
            path_token_set=frozenset(path_tokens),
        )


@dataclass(frozen=True)
class _Snapshot:
    """Immutable searchable view of one index generation."""

    generation: int
    entries: tuple[IndexEntry, ...]
    by_id: dict[str, IndexEntry]
    content_bm25: BM25Plus | None
    name_bm25: BM25Plus | None
    path_bm25: BM25Plus | None


class LexicalIndex:
    """BM25-ranked index over chunk text.

    Writes (insert, delete, clear) go to the writer-side state under a lock
    and bump the generation. Reads pick up the current snapshot, refreshing it
    first if a write happened since it was built; a reader holding an older
    snapshot keeps a consistent view.

    Attributes:
        index_dir: Optional directory for segment persistence
        k1: BM25 term-frequency saturation
        b: BM25 length normalization
    """

    def __init__(
        self,
        index_dir: Path | None = None,
        k1: float = BM25_K1,
        b: float = BM25_B,
        max_segments: int = LEXICAL_MAX_SEGMENTS,
    ):
        """Initialize lexical index.

        Args:
            index_dir: Directory holding the manifest and segments. When it
                contains a manifest, the index is loaded from it.
            k1: BM25 k1 parameter (default: 1.2)
            b: BM25 b parameter (default: 0.75)
            max_segments: Segment count above which segments are compacted into one

        Raises:
            StoreIOError: If an existing index cannot be read
        """
        self.index_dir = Path(index_dir) if index_dir is not None else None
        self.k1 = k1
        self.b = b
        self.max_segments = max_segments

        self._write_lock = threading.RLock()
        self._entries: dict[str, IndexEntry] = {}
        self._pending_ops: list[dict] = []
        self._segments: list[str] = []
        self._next_segment = 1
        self._generation = 0
        self._snapshot = _Snapshot(0, (), {}, None, None, None)

        if self.index_dir is not None:
            self._load()

        logger.info(
            f"LexicalIndex initialized: {len(self._entries)} entries, k1={k1}, b={b}"
        )

    # =========================================================================
    # Writes
    # =========================================================================

    @staticmethod
    def prepare(chunk: Chunk) -> IndexEntry:
        """Tokenize a chunk. Pure and thread-safe, used by parallel indexing."""
        if not chunk.id or not chunk.content.strip():
            raise InvalidChunk("Chunk id and content must be non-empty", chunk_id=chunk.id)
        return IndexEntry.from_chunk(chunk)

    def insert(self, chunk: Chunk) -> None:
        """Insert a single chunk and commit."""
        self.insert_prepared([self.prepare(chunk)])

    def insert_batch(self, chunks: Iterable[Chunk]) -> int:
        """Insert chunks and commit once at the end.

        Returns:
            Number of chunks inserted
        """
        entries = [self.prepare(chunk) for chunk in chunks]
        return self.insert_prepared(entries)

    def insert_prepared(self, entries: list[IndexEntry]) -> int:
        """Add pre-tokenized entries and commit once.

        An entry whose id is already indexed replaces the previous entry.
        """
        with self._write_lock:
            for entry in entries:
                self._entries[entry.chunk.id] = entry
                self._pending_ops.append(
                    {"op": "add", "chunk": entry.chunk.model_dump(mode="json")}
                )
            self._generation += 1
            self.commit()

        logger.debug(f"Inserted {len(entries)} entries into lexical index")
        return len(entries)

    def delete_by_query(self, query: str) -> int:
        """Delete every chunk matching ``query`` and commit.

        Returns:
            Number of chunks deleted

        Raises:
            QuerySyntaxError: If the query is malformed
        """
        parsed = parse_query(query)
        if parsed.is_empty:
            return 0

        with self._write_lock:
            snapshot = self._current_snapshot()
            doomed = [
                entry.chunk.id
                for entry in snapshot.entries
                if parsed.matches(list(entry.tokens), entry.token_set)
            ]
            for chunk_id in doomed:
                if self._entries.pop(chunk_id, None) is not None:
                    self._pending_ops.append({"op": "delete", "id": chunk_id})
            if doomed:
                self._generation += 1
                self.commit()

        logger.info(f"Deleted {len(doomed)} chunks matching '{query}'")
        return len(doomed)

    def clear(self) -> None:
        """Remove everything, including persisted segments (full rebuild)."""
        with self._write_lock:
            self._entries.clear()
            self._pending_ops.clear()
            self._generation += 1

            if self.index_dir is not None:
                old_segments = list(self._segments)
                self._segments = []
                self._write_manifest()
                self._remove_segment_files(old_segments)

        logger.info("Cleared lexical index")

    def commit(self) -> None:
        """Refresh the searchable view and persist pending operations.

        Raises:
            StoreIOError: If persistence fails (the in-memory view is still updated,
                pending operations are kept for the next commit)
        """
        with self._write_lock:
            self._current_snapshot()

            if self.index_dir is None:
                self._pending_ops.clear()
                return
            if not self._pending_ops:
                return

            segment_name = f"segment_{self._next_segment:06d}.json"
            self._write_json(self.index_dir / segment_name, {"ops": self._pending_ops})
            self._segments.append(segment_name)
            self._next_segment += 1
            self._write_manifest()
            self._pending_ops = []

            if len(self._segments) > self.max_segments:
                self._compact()

    def close(self) -> None:
        """Commit any pending operations."""
        with self._write_lock:
            if self._pending_ops:
                self.commit()

    # =========================================================================
    # Reads
    # =========================================================================

    def search(
        self,
        query: str,
        max_results: int = 10,
        kind_filter: ChunkKind | None = None,
    ) -> list[LexicalHit]:
        """Rank chunks by BM25 relevance to ``query``.

        Args:
            query: Query text (see query_parser for syntax)
            max_results: Maximum number of hits
            kind_filter: Only return chunks of this kind (applied before the limit)

        Returns:
            Hits sorted by descending score, ties in insertion order

        Raises:
            QuerySyntaxError: If the query is malformed
        """
        parsed = parse_query(query)
        snapshot = self._current_snapshot()
        return self._rank(
            parsed,
            snapshot,
            snapshot.content_bm25,
            lambda entry: (entry.tokens, entry.token_set),
            max_results,
            kind_filter,
        )

    def search_by_qualified_name(self, pattern: str, max_results: int = 10) -> list[LexicalHit]:
        """Search the qualified-name field.

        Glob patterns (``*``, ``?``) match the raw name; anything else is a
        BM25 query over the name tokens.
        """
        snapshot = self._current_snapshot()
        if _WILDCARD_CHARS & set(pattern):
            return self._glob(snapshot, pattern, lambda c: c.qualified_name or "", max_results)
        return self._rank(
            parse_query(pattern),
            snapshot,
            snapshot.name_bm25,
            lambda entry: (entry.name_tokens, entry.name_token_set),
            max_results,
            None,
        )

    def search_by_file_path(self, pattern: str, max_results: int = 10) -> list[LexicalHit]:
        """Search the file-path field (glob or BM25, as for qualified names)."""
        snapshot = self._current_snapshot()
        if _WILDCARD_CHARS & set(pattern):
            return self._glob(snapshot, pattern, lambda c: c.file_path, max_results)
        return self._rank(
            parse_query(pattern),
            snapshot,
            snapshot.path_bm25,
            lambda entry: (entry.path_tokens, entry.path_token_set),
            max_results,
            None,
        )

    def count(self) -> int:
        return len(self._current_snapshot().entries)

    def __len__(self) -> int:
        return self.count()

    def get_chunk(self, chunk_id: str) -> Chunk | None:
        entry = self._current_snapshot().by_id.get(chunk_id)
        return entry.chunk if entry is not None else None

    def all_chunks(self) -> list[Chunk]:
        """All indexed chunks in insertion order."""
        return [entry.chunk for entry in self._current_snapshot().entries]

    # =========================================================================
    # Snapshot management
    # =========================================================================

    def _current_snapshot(self) -> _Snapshot:
        """Return the searchable view, rebuilding it if a write made it stale."""
        snapshot = self._snapshot
        if snapshot.generation == self._generation:
            return snapshot

        with self._write_lock:
            if self._snapshot.generation != self._generation:
                self._snapshot = self._build_snapshot()
            return self._snapshot

    def _build_snapshot(self) -> _Snapshot:
        """Build BM25 models for the current writer state (caller holds the lock)."""
        entries = tuple(self._entries.values())
        snapshot = _Snapshot(
            generation=self._generation,
            entries=entries,
            by_id={entry.chunk.id: entry for entry in entries},
            content_bm25=self._build_bm25([list(e.tokens) for e in entries]),
            name_bm25=self._build_bm25([list(e.name_tokens) for e in entries]),
            path_bm25=self._build_bm25([list(e.path_tokens) for e in entries]),
        )
        logger.debug(
            f"Refreshed lexical snapshot: generation={snapshot.generation}, "
            f"{len(entries)} entries"
        )
        return snapshot

    def _build_bm25(self, corpus: list[list[str]]) -> BM25Plus | None:
        """Build a BM25 model, or None when the field has no tokens at all.

        BM25Plus with delta=0 is classic BM25 with the always-positive
        IDF log((N+1)/n), so small corpora never produce negative scores.
        """
        if not corpus or not any(corpus):
            return None
        return BM25Plus(corpus, k1=self.k1, b=self.b, delta=0.0)

    # =========================================================================
    # Ranking helpers
    # =========================================================================

    def _rank(
        self,
        parsed: ParsedQuery,
        snapshot: _Snapshot,
        bm25: BM25Plus | None,
        field_tokens,
        max_results: int,
        kind_filter: ChunkKind | None,
    ) -> list[LexicalHit]:
        if max_results <= 0 or parsed.is_empty or bm25 is None:
            return []

        scores = bm25.get_scores(parsed.positive_terms)

        scored: list[tuple[float, IndexEntry]] = []
        for position, entry in enumerate(snapshot.entries):
            if kind_filter is not None and entry.chunk.kind != kind_filter:
                continue
            tokens, token_set = field_tokens(entry)
            if not parsed.matches(list(tokens), token_set):
                continue
            score = float(scores[position])
            if score > 0.0:
                scored.append((score, entry))

        # Stable sort keeps insertion order for equal scores
        scored.sort(key=lambda item: -item[0])

        return [_to_hit(entry.chunk, score) for score, entry in scored[:max_results]]

    @staticmethod
    def _glob(snapshot: _Snapshot, pattern: str, field, max_results: int) -> list[LexicalHit]:
        if max_results <= 0:
            return []
        hits = []
        for entry in snapshot.entries:
            if fnmatchcase(field(entry.chunk), pattern):
                hits.append(_to_hit(entry.chunk, 1.0))
                if len(hits) >= max_results:
                    break
        return hits

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load(self) -> None:
        """Replay persisted segments into the writer state."""
        manifest_path = self.index_dir / MANIFEST_FILE
        if not manifest_path.exists():
            logger.info(f"No lexical index found at {self.index_dir}, starting empty")
            return

        manifest = self._read_json(manifest_path)
        self._segments = list(manifest.get("segments", []))
        self._next_segment = int(manifest.get("next_segment", len(self._segments) + 1))

        for segment_name in self._segments:
            segment = self._read_json(self.index_dir / segment_name)
            for op in segment.get("ops", []):
                if op.get("op") == "add":
                    try:
                        chunk = create_chunk_from_dict(op["chunk"])
                    except InvalidChunk as e:
                        logger.warning(f"Skipping invalid chunk in {segment_name}: {e}")
                        continue
                    self._entries[chunk.id] = IndexEntry.from_chunk(chunk)
                elif op.get("op") == "delete":
                    self._entries.pop(op.get("id"), None)

        self._generation += 1
        logger.info(
            f"Loaded lexical index from {self.index_dir}: "
            f"{len(self._segments)} segments, {len(self._entries)} entries"
        )

    def _compact(self) -> None:
        """Rewrite all live entries into a single segment."""
        old_segments = list(self._segments)
        segment_name = f"segment_{self._next_segment:06d}.json"
        ops = [
            {"op": "add", "chunk": entry.chunk.model_dump(mode="json")}
            for entry in self._entries.values()
        ]
        self._write_json(self.index_dir / segment_name, {"ops": ops})
        self._next_segment += 1
        self._segments = [segment_name]
        self._write_manifest()
        self._remove_segment_files(old_segments)
        logger.info(f"Compacted {len(old_segments)} lexical segments into {segment_name}")

    def _write_manifest(self) -> None:
        self._write_json(
            self.index_dir / MANIFEST_FILE,
            {
                "version": MANIFEST_VERSION,
                "segments": self._segments,
                "next_segment": self._next_segment,
            },
        )

    def _remove_segment_files(self, segment_names: list[str]) -> None:
        for segment_name in segment_names:
            try:
                (self.index_dir / segment_name).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove stale segment {segment_name}: {e}")

    @staticmethod
    def _write_json(path: Path, data: dict) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")
            raise StoreIOError(f"Failed to write lexical index file: {e}", path=str(path)) from e

    @staticmethod
    def _read_json(path: Path) -> dict:
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read {path}: {e}")
            raise StoreIOError(f"Failed to read lexical index file: {e}", path=str(path)) from e


def _to_hit(chunk: Chunk, score: float) -> LexicalHit:
    return LexicalHit(
        chunk_id=chunk.id,
        content=chunk.content,
        score=score,
        file_path=chunk.file_path,
        qualified_name=chunk.qualified_name,
        kind=chunk.kind,
    )
