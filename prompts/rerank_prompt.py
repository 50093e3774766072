"""Reranking prompts for the external relevance scorer.

This module defines the prompts sent to the chat model that scores the final
candidate batch, one variant for free-text queries and one for finding the
equivalent of a source-codebase fragment.

Uses string.Template for safe substitution.

Author: Hay Hoffman
"""

from string import Template

from models.retrieval import RerankCandidate

__all__ = [
    "RERANK_SYSTEM_PROMPT",
    "RERANK_USER_PROMPT_TEMPLATE",
    "PATTERN_RERANK_USER_PROMPT_TEMPLATE",
    "build_rerank_prompt",
    "build_pattern_rerank_prompt",
]


RERANK_SYSTEM_PROMPT = """You are a code search relevance judge for a large enterprise codebase.

You receive a search request and a numbered list of candidate code chunks.
Score how relevant each candidate is to the request:
- 10: exactly what was asked for
- 7-9: directly relevant, implements or closely supports the request
- 4-6: related code in the same area
- 1-3: weakly related
- 0: unrelated

Rules:
- Use the chunk_id values exactly as given.
- You may omit candidates you cannot judge.
- Keep each reasoning to one short sentence.

Respond with JSON only, in this exact shape:
{"rankings": [{"chunk_id": "<id>", "score": <0-10>, "reasoning": "<why>"}]}
"""

RERANK_USER_PROMPT_TEMPLATE = Template("""# Query
$query

# Candidates
$candidates
""")

PATTERN_RERANK_USER_PROMPT_TEMPLATE = Template("""# Task
Find the code in this codebase that is equivalent to the source fragment below
(same responsibility, possibly different names or framework).
$hint_line$kind_line
# Source fragment
```
$source_text
```

# Candidates
$candidates
""")


def _format_candidates(candidates: list[RerankCandidate]) -> str:
    """Render candidate summaries as numbered markdown blocks."""
    blocks = []
    for number, candidate in enumerate(candidates, start=1):
        lines = [
            f"## {number}. chunk_id: {candidate.chunk_id}",
            f"- kind: {candidate.kind.value}",
            f"- name: {candidate.qualified_name or '(unnamed)'}",
            f"- file: {candidate.file_path}",
            f"- vector similarity: {candidate.vector_similarity:.3f}",
        ]
        if candidate.structural_mapping:
            mapping = ", ".join(f"{k}={v}" for k, v in candidate.structural_mapping.items())
            lines.append(f"- mapping: {mapping}")
        if candidate.imports:
            lines.append(f"- imports: {', '.join(candidate.imports)}")
        if candidate.api_calls:
            lines.append(f"- calls: {', '.join(candidate.api_calls)}")
        lines.append("```")
        lines.append(candidate.content)
        lines.append("```")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def build_rerank_prompt(query: str, candidates: list[RerankCandidate]) -> str:
    """Build the user prompt for a free-text query.

    Args:
        query: Original query text
        candidates: Candidate summaries (already capped and truncated)

    Returns:
        Formatted prompt string
    """
    return RERANK_USER_PROMPT_TEMPLATE.substitute(
        query=query,
        candidates=_format_candidates(candidates),
    )


def build_pattern_rerank_prompt(
    source_text: str,
    candidates: list[RerankCandidate],
    target_hint: str | None = None,
    preferred_kind: str | None = None,
) -> str:
    """Build the user prompt for the pattern-matching variant."""
    return PATTERN_RERANK_USER_PROMPT_TEMPLATE.substitute(
        source_text=source_text,
        hint_line=f"Hint: {target_hint}\n" if target_hint else "",
        kind_line=f"Preferred kind: {preferred_kind}\n" if preferred_kind else "",
        candidates=_format_candidates(candidates),
    )
