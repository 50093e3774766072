"""Chat model factory for the reranking oracle.

One ChatGoogleGenerativeAI instance is built per model name and shared by
every LLMReranker in the process.

Author: Hay Hoffman
"""

from __future__ import annotations

import logging
import threading

from langchain_core.language_models import BaseChatModel
from langchain_google_genai import ChatGoogleGenerativeAI

from settings import (
    GOOGLE_API_KEY,
    LLM_MAX_RETRIES,
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LLM_TIMEOUT,
    LLM_TOP_K,
    LLM_TOP_P,
)

__all__ = ["create_llm_with_config", "get_cached_llm", "is_llm_configured"]

logger = logging.getLogger(__name__)

# model name -> chat model
_LLM_CACHE: dict[str, BaseChatModel] = {}
_LLM_CACHE_LOCK = threading.Lock()


def is_llm_configured() -> bool:
    """True when an API key is available for the chat model."""
    return bool(GOOGLE_API_KEY)


def get_cached_llm(model: str) -> BaseChatModel:
    """Return the shared chat model for ``model``, building it on first use.

    Raises:
        RuntimeError: If the model cannot be built
    """
    with _LLM_CACHE_LOCK:
        llm = _LLM_CACHE.get(model)
        if llm is None:
            llm = create_llm_with_config(model)
            _LLM_CACHE[model] = llm
            logger.info(f"Reranking model ready: {model}")
        return llm


def create_llm_with_config(
    model: str,
    temperature: float = LLM_TEMPERATURE,
    max_tokens: int | None = LLM_MAX_TOKENS,
    top_p: float = LLM_TOP_P,
    top_k: int = LLM_TOP_K,
    timeout: int = LLM_TIMEOUT,
    max_retries: int = LLM_MAX_RETRIES,
) -> BaseChatModel:
    """Build a Gemini chat model.

    Retries are bounded by ``max_retries`` so a dead endpoint fails within
    roughly ``timeout * (max_retries + 1)`` seconds; the reranker's own
    timeout usually fires first.

    Args:
        model: Gemini model name (e.g. "gemini-2.0-flash-lite")
        temperature: Sampling temperature
        max_tokens: Output token cap (None for the model default)
        top_p: Nucleus sampling mass
        top_k: Top-k sampling size
        timeout: Per-request timeout in seconds
        max_retries: Retry attempts after a failed request

    Raises:
        RuntimeError: If GOOGLE_API_KEY is missing or the client cannot be built
    """
    if not GOOGLE_API_KEY:
        raise RuntimeError("GOOGLE_API_KEY is not set; add it to .env to enable LLM reranking")

    try:
        llm = ChatGoogleGenerativeAI(
            model=model,
            google_api_key=GOOGLE_API_KEY,
            temperature=temperature,
            max_output_tokens=max_tokens,
            top_p=top_p,
            top_k=top_k,
            timeout=timeout,
            max_retries=max_retries,
        )
    except Exception as e:
        logger.error(f"Could not build chat model {model}: {e}")
        raise RuntimeError(f"Could not build chat model {model}: {e}") from e

    logger.debug(f"Built chat model {model} (temperature={temperature}, timeout={timeout}s)")
    return llm
