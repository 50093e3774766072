"""Prompts module for LLM interactions.

This module contains the LLM prompts used by the retrieval engine's
external reranker.

Author: Hay Hoffman
Version: 2.0
"""

from prompts.rerank_prompt import (
    PATTERN_RERANK_USER_PROMPT_TEMPLATE,
    RERANK_SYSTEM_PROMPT,
    RERANK_USER_PROMPT_TEMPLATE,
    build_pattern_rerank_prompt,
    build_rerank_prompt,
)

__all__ = [
    "RERANK_SYSTEM_PROMPT",
    "RERANK_USER_PROMPT_TEMPLATE",
    "PATTERN_RERANK_USER_PROMPT_TEMPLATE",
    "build_rerank_prompt",
    "build_pattern_rerank_prompt",
]
