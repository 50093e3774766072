"""Code relationship graph for structural re-scoring of lexical candidates.

The graph is a set of adjacency maps keyed by chunk id, rebuilt wholesale from
a chunk batch on every build() call:
- calls: call targets observed in each chunk
- inherits_from: supertypes parsed from the enclosing class summary
- imports: imported symbols
- routes_to: routing values from the chunk's structural mapping
- package_members: package name -> chunk ids

Edges reference chunk ids only; chunks are never owned by the graph.

Author: Hay Hoffman
"""

import logging
import math
import re
from collections import Counter, defaultdict
from typing import Iterable, Sequence

from models.chunk import Chunk, ChunkKind
from models.retrieval import PatternHints, QueryHints
from settings import (
    FRAMEWORK_HINTS,
    GRAPH_CALL_WEIGHT,
    GRAPH_COOCCURRENCE_WEIGHT,
    GRAPH_IMPORT_WEIGHT,
    GRAPH_MAPPING_WEIGHT,
    GRAPH_PACKAGE_WEIGHT,
    JAVA_KEYWORDS,
    PATTERN_API_WEIGHT,
    PATTERN_FRAMEWORK_WEIGHT,
    PATTERN_KIND_WEIGHT,
    PATTERN_SIGNATURE_WEIGHT,
    ROUTING_KEY_MARKERS,
)
from src.retrieval.tokenizer import tokenize_code_aware

logger = logging.getLogger(__name__)

__all__ = ["CodeGraph", "QUERY_HINT_RULES", "extract_query_hints", "extract_pattern_hints"]

# Query keyword -> hint category -> hint values (all lower-case)
QUERY_HINT_RULES: dict[str, dict[str, tuple[str, ...]]] = {
    "service": {"api": ("service",), "package": ("service",)},
    "dao": {"api": ("dao",), "package": ("dao",)},
    "repository": {"api": ("repository",), "package": ("repository",)},
    "controller": {"api": ("controller",), "package": ("controller",)},
    "action": {"api": ("action",), "mapping": ("action",)},
    "util": {"package": ("util",)},
    "web": {"package": ("web",)},
    "login": {"mapping": ("login",)},
    "user": {"mapping": ("user",)},
    "form": {"mapping": ("form",)},
    "jsp": {"mapping": ("jsp",)},
    "struts": {"import": ("struts",)},
    "spring": {"import": ("springframework",)},
    "hibernate": {"import": ("hibernate",)},
    "jdbc": {"import": ("sql",)},
    "servlet": {"import": ("servlet",)},
}

_HINT_CATEGORY_FIELDS = {
    "package": "package_hints",
    "api": "api_hints",
    "import": "import_hints",
    "mapping": "mapping_hints",
}

_EXTENDS_PATTERN = re.compile(r'\bextends\s+([\w.]+)')
_IMPLEMENTS_PATTERN = re.compile(r'\bimplements\s+([\w.,\s]+)')
_API_CALL_PATTERN = re.compile(r'(\w+)\s*\(')
_SIGNATURE_PATTERN = re.compile(r'\b[A-Z][a-zA-Z0-9]*\b')


def extract_query_hints(query: str) -> QueryHints:
    """Infer structural hints from free-text query keywords.

    Deterministic lookup in QUERY_HINT_RULES over the query's code-aware tokens.
    """
    hints = QueryHints()
    tokens = set(tokenize_code_aware(query))

    for keyword, categories in QUERY_HINT_RULES.items():
        if keyword not in tokens:
            continue
        for category, values in categories.items():
            getattr(hints, _HINT_CATEGORY_FIELDS[category]).update(values)

    return hints


def extract_pattern_hints(source_text: str, preferred_kind: ChunkKind | None = None) -> PatternHints:
    """Extract API-call, signature and framework hints from a code fragment."""
    api_patterns = [
        name for name in dict.fromkeys(_API_CALL_PATTERN.findall(source_text))
        if len(name) > 2 and name not in JAVA_KEYWORDS
    ]
    signature_hints = [
        name for name in dict.fromkeys(_SIGNATURE_PATTERN.findall(source_text))
        if len(name) > 2
    ]
    source_lower = source_text.lower()
    framework_hints = [hint for hint in FRAMEWORK_HINTS if hint in source_lower]

    return PatternHints(
        preferred_kind=preferred_kind,
        api_patterns=api_patterns,
        signature_hints=signature_hints,
        framework_hints=framework_hints,
    )


def _edge_terms(values: Iterable[str]) -> set[str]:
    """Normalize edge values into matchable terms (raw lower-case + tokens)."""
    terms: set[str] = set()
    for value in values:
        terms.add(value.lower())
        terms.update(tokenize_code_aware(value))
    return terms


def _package_from_name(qualified_name: str | None) -> str | None:
    if not qualified_name or "." not in qualified_name:
        return None
    return qualified_name.rsplit(".", 1)[0]


class CodeGraph:
    """Structural relationships between chunks.

    Attributes:
        calls: chunk_id -> call targets
        inherits_from: chunk_id -> supertype names
        imports: chunk_id -> imported symbols
        routes_to: chunk_id -> routing values (action paths, include paths, ...)
        package_members: package -> chunk ids
    """

    def __init__(
        self,
        package_weight: float = GRAPH_PACKAGE_WEIGHT,
        call_weight: float = GRAPH_CALL_WEIGHT,
        import_weight: float = GRAPH_IMPORT_WEIGHT,
        mapping_weight: float = GRAPH_MAPPING_WEIGHT,
        cooccurrence_weight: float = GRAPH_COOCCURRENCE_WEIGHT,
    ):
        self.package_weight = package_weight
        self.call_weight = call_weight
        self.import_weight = import_weight
        self.mapping_weight = mapping_weight
        self.cooccurrence_weight = cooccurrence_weight

        self.calls: dict[str, set[str]] = {}
        self.inherits_from: dict[str, set[str]] = {}
        self.imports: dict[str, set[str]] = {}
        self.routes_to: dict[str, set[str]] = {}
        self.package_members: dict[str, set[str]] = {}

        # Derived lookups
        self.package_of: dict[str, str] = {}
        self._kinds: dict[str, ChunkKind] = {}
        self._qualified_names: dict[str, str] = {}
        self._by_simple_name: dict[str, list[str]] = {}
        self._call_terms: dict[str, set[str]] = {}
        self._import_terms: dict[str, set[str]] = {}
        self._route_terms: dict[str, set[str]] = {}
        self._package_segments: dict[str, set[str]] = {}

    # =========================================================================
    # Build
    # =========================================================================

    def build(self, chunks: Iterable[Chunk]) -> None:
        """Rebuild every mapping from ``chunks`` (full rebuild, never incremental)."""
        calls: dict[str, set[str]] = {}
        inherits_from: dict[str, set[str]] = {}
        imports: dict[str, set[str]] = {}
        routes_to: dict[str, set[str]] = {}
        package_members: dict[str, set[str]] = defaultdict(set)
        package_of: dict[str, str] = {}
        kinds: dict[str, ChunkKind] = {}
        qualified_names: dict[str, str] = {}
        by_simple_name: dict[str, list[str]] = defaultdict(list)

        for chunk in chunks:
            chunk_id = chunk.id
            kinds[chunk_id] = chunk.kind

            if chunk.qualified_name:
                qualified_names[chunk_id] = chunk.qualified_name
                by_simple_name[chunk.simple_name].append(chunk_id)

            if chunk.api_call_sequence:
                calls[chunk_id] = set(chunk.api_call_sequence)

            supertypes = self._parse_supertypes(chunk.enclosing_class_summary)
            if supertypes:
                inherits_from[chunk_id] = supertypes

            if chunk.imports:
                imports[chunk_id] = set(chunk.imports)

            routes = {
                value for key, value in chunk.structural_mapping.items()
                if value and any(marker in key.lower() for marker in ROUTING_KEY_MARKERS)
            }
            if routes:
                routes_to[chunk_id] = routes

            package = chunk.package_or_namespace or _package_from_name(chunk.qualified_name)
            if package:
                package_members[package].add(chunk_id)
                package_of[chunk_id] = package

        # Swap in the new generation
        self.calls = calls
        self.inherits_from = inherits_from
        self.imports = imports
        self.routes_to = routes_to
        self.package_members = dict(package_members)
        self.package_of = package_of
        self._kinds = kinds
        self._qualified_names = qualified_names
        self._by_simple_name = dict(by_simple_name)
        self._call_terms = {cid: _edge_terms(v) for cid, v in calls.items()}
        self._import_terms = {cid: _edge_terms(v) for cid, v in imports.items()}
        self._route_terms = {cid: _edge_terms(v) for cid, v in routes_to.items()}
        self._package_segments = {
            cid: {segment.lower() for segment in pkg.split(".") if segment}
            for cid, pkg in package_of.items()
        }

        logger.info(f"Built code graph: {self.stats()}")

    @staticmethod
    def _parse_supertypes(summary: str | None) -> set[str]:
        if not summary:
            return set()
        supertypes: set[str] = set()
        for match in _EXTENDS_PATTERN.finditer(summary):
            supertypes.add(match.group(1))
        for match in _IMPLEMENTS_PATTERN.finditer(summary):
            supertypes.update(
                name.strip() for name in match.group(1).split(",") if name.strip()
            )
        return supertypes

    # =========================================================================
    # Scoring
    # =========================================================================

    def score_for_query(self, candidate_ids: Sequence[str], hints: QueryHints) -> dict[str, float]:
        """Score candidates by structural proximity to query hints.

        Weighted sum of package-hint match, call/import/mapping hint overlap
        ratios and a package co-occurrence boost, clamped to [0, 1].

        Args:
            candidate_ids: Ids of the candidate batch
            hints: Hints inferred from the query

        Returns:
            Mapping of chunk_id -> score in [0, 1]
        """
        package_counts = Counter(
            self.package_of[cid] for cid in candidate_ids if cid in self.package_of
        )

        scores: dict[str, float] = {}
        for cid in candidate_ids:
            score = 0.0

            if hints.package_hints & self._package_segments.get(cid, set()):
                score += self.package_weight

            score += self.call_weight * _overlap_ratio(hints.api_hints, self._call_terms.get(cid))
            score += self.import_weight * _overlap_ratio(
                hints.import_hints, self._import_terms.get(cid)
            )
            score += self.mapping_weight * _overlap_ratio(
                hints.mapping_hints, self._route_terms.get(cid)
            )

            # Corroboration by other candidates in the same package
            package = self.package_of.get(cid)
            if package is not None:
                others = package_counts[package] - 1
                if others >= 2:
                    score += self.cooccurrence_weight * math.log(others)

            scores[cid] = max(0.0, min(1.0, score))

        return scores

    def score_for_pattern(
        self,
        candidate_ids: Sequence[str],
        source_text: str,
        preferred_kind: ChunkKind | None = None,
    ) -> dict[str, float]:
        """Score candidates as equivalents of a source-codebase fragment.

        Kind match (0.4), API-call substring matches (up to 0.3), signature
        name hit in the qualified name (0.2) and framework co-import (0.1),
        clamped to 1.0.
        """
        hints = extract_pattern_hints(source_text, preferred_kind)
        api_patterns = [p.lower() for p in hints.api_patterns]

        scores: dict[str, float] = {}
        for cid in candidate_ids:
            score = 0.0

            if preferred_kind is not None and self._kinds.get(cid) == preferred_kind:
                score += PATTERN_KIND_WEIGHT

            if api_patterns:
                calls = [call.lower() for call in self.calls.get(cid, ())]
                matched = sum(1 for p in api_patterns if any(p in call for call in calls))
                score += PATTERN_API_WEIGHT * matched / len(api_patterns)

            qualified_name = self._qualified_names.get(cid, "")
            if qualified_name and any(hint in qualified_name for hint in hints.signature_hints):
                score += PATTERN_SIGNATURE_WEIGHT

            if hints.framework_hints:
                imports = [imp.lower() for imp in self.imports.get(cid, ())]
                if any(hint in imp for hint in hints.framework_hints for imp in imports):
                    score += PATTERN_FRAMEWORK_WEIGHT

            scores[cid] = min(1.0, score)

        return scores

    # =========================================================================
    # Navigation
    # =========================================================================

    def neighbors(self, chunk_id: str, max_results: int = 10) -> list[str]:
        """Chunks structurally related to ``chunk_id``.

        Order: callees, supertypes, subtypes, then same-package members.
        """
        related: list[str] = []

        for target in sorted(self.calls.get(chunk_id, ())):
            related.extend(self._by_simple_name.get(target.rsplit(".", 1)[-1], ()))

        for supertype in sorted(self.inherits_from.get(chunk_id, ())):
            related.extend(self._by_simple_name.get(supertype.rsplit(".", 1)[-1], ()))

        own_name = self._qualified_names.get(chunk_id, "").rsplit(".", 1)[-1]
        if own_name:
            for other_id, supertypes in self.inherits_from.items():
                if any(s.rsplit(".", 1)[-1] == own_name for s in supertypes):
                    related.append(other_id)

        package = self.package_of.get(chunk_id)
        if package is not None:
            related.extend(sorted(self.package_members.get(package, ())))

        unique = [cid for cid in dict.fromkeys(related) if cid != chunk_id]
        return unique[:max_results]

    def stats(self) -> dict[str, int]:
        return {
            "nodes": len(self._kinds),
            "calls": sum(len(v) for v in self.calls.values()),
            "inherits_from": sum(len(v) for v in self.inherits_from.values()),
            "imports": sum(len(v) for v in self.imports.values()),
            "routes_to": sum(len(v) for v in self.routes_to.values()),
            "packages": len(self.package_members),
        }

    def __len__(self) -> int:
        return len(self._kinds)


def _overlap_ratio(hints: set[str], terms: set[str] | None) -> float:
    """|hints & terms| / max(1, |hints|)."""
    if not hints or not terms:
        return 0.0
    return len(hints & terms) / max(1, len(hints))
