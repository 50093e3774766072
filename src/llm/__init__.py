"""Chat model access for the reranking oracle.

Author: Hay Hoffman
"""

from src.llm.llm import create_llm_with_config, get_cached_llm, is_llm_configured
from src.llm.workers import extract_json_object, invoke_json, invoke_structured

__all__ = [
    "create_llm_with_config",
    "get_cached_llm",
    "is_llm_configured",
    "invoke_structured",
    "invoke_json",
    "extract_json_object",
]
