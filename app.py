"""Command-line entry point for the hybrid code retrieval engine.

Usage:
    python app.py index <directory>
    python app.py search "<query>" [--max-results N] [--json]
    python app.py pattern <source_file> [--hint TEXT] [--kind KIND] [--max-results N]
    python app.py status

Indices live under INDEX_DIR (see settings.py). Reranking uses the configured
LLM when GOOGLE_API_KEY is set and RERANK_ENABLED is true; otherwise results
are ranked by vector similarity alone.

Author: Hay Hoffman
"""

import argparse
import json
import logging
import os
import sys
import warnings
from pathlib import Path

# Suppress transformers and torch warnings BEFORE importing them
warnings.filterwarnings("ignore")
os.environ["TRANSFORMERS_VERBOSITY"] = "error"
os.environ["TOKENIZERS_PARALLELISM"] = "false"

from models.chunk import ChunkKind
from models.retrieval import RankedCandidate
from settings import (
    CHUNK_STORE_FILE,
    LEXICAL_INDEX_DIR,
    LOG_FORMAT,
    LOG_LEVEL,
    VECTOR_SNAPSHOT_FILE,
    ensure_data_dirs,
)
from src.exceptions import DimensionMismatch, QuerySyntaxError, RetrievalError
from src.retrieval import (
    ChunkStore,
    CodeGraph,
    CodeIndexer,
    HybridRetriever,
    LexicalIndex,
    VectorIndex,
    create_default_reranker,
)

logger = logging.getLogger(__name__)


class Engine:
    """All components wired against the on-disk indices."""

    def __init__(self):
        ensure_data_dirs()
        self.chunk_store = ChunkStore(CHUNK_STORE_FILE)
        self.lexical_index = LexicalIndex(LEXICAL_INDEX_DIR)
        self.vector_index = VectorIndex(snapshot_path=VECTOR_SNAPSHOT_FILE)
        self.graph = CodeGraph()
        self.graph.build(self.chunk_store.all())

    def indexer(self) -> CodeIndexer:
        return CodeIndexer(
            self.lexical_index,
            self.vector_index,
            self.graph,
            self.chunk_store,
            chunk_store_file=CHUNK_STORE_FILE,
        )

    def retriever(self) -> HybridRetriever:
        return HybridRetriever(
            self.lexical_index,
            self.vector_index,
            self.graph,
            create_default_reranker(),
            chunk_lookup=self.chunk_store.get,
        )

    def close(self) -> None:
        self.lexical_index.close()
        self.vector_index.close()


def print_results(results: list[RankedCandidate], as_json: bool) -> None:
    """Print ranked results as text or JSON."""
    if as_json:
        print(json.dumps([r.to_metadata() for r in results], indent=2))
        return

    if not results:
        print("\n[i] No results.")
        return

    print("\n" + "=" * 70)
    for rank, result in enumerate(results, start=1):
        print(
            f"{rank:2d}. [{result.combined_score:.3f}] {result.citation} "
            f"({result.chunk.kind.value}, {result.ranking_method})"
        )
        if result.chunk.qualified_name:
            print(f"    {result.chunk.qualified_name}")
        print(f"    {result.preview}")
        if result.reasoning:
            print(f"    reason: {result.reasoning}")
    print("=" * 70)


def cmd_index(engine: Engine, args: argparse.Namespace) -> int:
    print(f"[*] Indexing {args.directory}...")
    result = engine.indexer().index_directory(Path(args.directory))

    print(f"[+] Files scanned:  {result.files_scanned}")
    print(f"    Chunks indexed: {result.chunks_indexed}/{result.chunks_received}")
    print(f"    Skipped:        {result.chunks_skipped}")
    print(f"    Lexical/vector: {result.lexical_count}/{result.vector_count}")
    print(f"    Elapsed:        {result.elapsed_seconds:.2f}s")
    for error in result.errors[:10]:
        print(f"    [!] {error}")
    if not result.persisted:
        print("[X] Indices were updated in memory but could not be saved")
        return 1
    return 0


def cmd_search(engine: Engine, args: argparse.Namespace) -> int:
    results = engine.retriever().find_relevant(args.query, args.max_results)
    print_results(results, args.json)
    return 0


def cmd_pattern(engine: Engine, args: argparse.Namespace) -> int:
    source_text = Path(args.source_file).read_text(encoding="utf-8")
    kind = ChunkKind.parse(args.kind) if args.kind else None
    results = engine.retriever().find_relevant_for_pattern(
        source_text,
        target_hint=args.hint,
        preferred_kind=kind,
        max_results=args.max_results,
    )
    print_results(results, args.json)
    return 0


def cmd_status(engine: Engine, args: argparse.Namespace) -> int:
    stats = engine.graph.stats()
    print(f"[*] Chunks:         {len(engine.chunk_store)}")
    print(f"    Lexical index:  {engine.lexical_index.count()}")
    print(f"    Vector index:   {engine.vector_index.size()} (dimension={engine.vector_index.dimension})")
    print("    Graph:          " + ", ".join(f"{name}={count}" for name, count in stats.items()))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Hybrid code retrieval engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    index_parser = subparsers.add_parser("index", help="Index *.chunks.json files under a directory")
    index_parser.add_argument("directory")
    index_parser.set_defaults(handler=cmd_index)

    search_parser = subparsers.add_parser("search", help="Find chunks relevant to a query")
    search_parser.add_argument("query")
    search_parser.add_argument("--max-results", type=int, default=None)
    search_parser.add_argument("--json", action="store_true", help="Print results as JSON")
    search_parser.set_defaults(handler=cmd_search)

    pattern_parser = subparsers.add_parser("pattern", help="Find the equivalent of a source fragment")
    pattern_parser.add_argument("source_file")
    pattern_parser.add_argument("--hint", default=None)
    pattern_parser.add_argument("--kind", default=None, help="Preferred chunk kind, e.g. METHOD")
    pattern_parser.add_argument("--max-results", type=int, default=None)
    pattern_parser.add_argument("--json", action="store_true", help="Print results as JSON")
    pattern_parser.set_defaults(handler=cmd_pattern)

    status_parser = subparsers.add_parser("status", help="Show index sizes")
    status_parser.set_defaults(handler=cmd_status)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)

    engine = Engine()
    try:
        return args.handler(engine, args)
    except QuerySyntaxError as e:
        print(f"\n[X] Invalid query: {e}")
        return 2
    except DimensionMismatch as e:
        print(f"\n[X] Embedding model does not match the index: {e}")
        return 2
    except (RetrievalError, OSError, ValueError) as e:
        print(f"\n[X] Error: {e}")
        logger.error(f"Command '{args.command}' failed: {e}", exc_info=True)
        return 1
    finally:
        engine.close()


if __name__ == "__main__":
    sys.exit(main())
