"""Chat model invocation returning validated Pydantic objects.

Two entry points share one error contract:
- invoke_structured: the model's native structured output
- invoke_json: a plain reply whose JSON object is extracted and validated

Both raise RuntimeError. When the reply arrived but could not be turned into
the schema, the RuntimeError's ``__cause__`` is a ValueError; any other cause
means the call itself failed.

Author: Hay Hoffman
"""

from __future__ import annotations

import json
import logging
from typing import Any, TypeVar

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage
from pydantic import BaseModel

__all__ = [
    "invoke_structured",
    "invoke_json",
    "extract_json_object",
]

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


def extract_json_object(text: str) -> dict:
    """Decode the text between the first '{' and the last '}' of a reply.

    Raises:
        ValueError: If there is no decodable JSON object
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("No JSON object found in response")

    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in response: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _bound(llm: BaseChatModel, temperature: float | None, max_tokens: int | None):
    """Apply per-call sampling overrides."""
    overrides: dict[str, Any] = {}
    if temperature is not None:
        overrides["temperature"] = temperature
    if max_tokens is not None:
        overrides["max_output_tokens"] = max_tokens
    return llm.bind(**overrides) if overrides else llm


def _require_schema(output_schema: Any) -> None:
    if not (isinstance(output_schema, type) and issubclass(output_schema, BaseModel)):
        raise TypeError(f"output_schema must be a Pydantic model class, got {output_schema!r}")


def invoke_structured(
    messages: list[BaseMessage],
    output_schema: type[T],
    llm: BaseChatModel,
    temperature: float | None = None,
    max_tokens: int | None = None,
    **kwargs: Any,
) -> T:
    """Call ``llm`` with native structured output.

    Args:
        messages: Prompt messages (ending with the user turn)
        output_schema: Pydantic model the reply is parsed into
        llm: Chat model
        temperature: Optional per-call temperature
        max_tokens: Optional per-call output cap
        **kwargs: Passed through to ``invoke``

    Returns:
        Parsed ``output_schema`` instance

    Raises:
        RuntimeError: If the call fails or the reply does not fit the schema
    """
    _require_schema(output_schema)

    try:
        runnable = _bound(llm, temperature, max_tokens).with_structured_output(output_schema)
        result = runnable.invoke(messages, **kwargs)
        if not isinstance(result, output_schema):
            raise ValueError(f"Expected {output_schema.__name__}, got {type(result).__name__}")
    except Exception as e:
        logger.error(f"Structured call for {output_schema.__name__} failed: {e}")
        raise RuntimeError(f"Structured call for {output_schema.__name__} failed: {e}") from e

    logger.debug(f"Structured reply parsed into {output_schema.__name__}")
    return result


def invoke_json(
    messages: list[BaseMessage],
    output_schema: type[T],
    llm: BaseChatModel,
    temperature: float | None = None,
    max_tokens: int | None = None,
    **kwargs: Any,
) -> T:
    """Call ``llm`` as plain chat and validate the JSON object in its reply.

    For chat models without structured output support.

    Raises:
        RuntimeError: If the call fails or the reply does not fit the schema
    """
    _require_schema(output_schema)

    try:
        reply = _bound(llm, temperature, max_tokens).invoke(messages, **kwargs)
    except Exception as e:
        logger.error(f"Chat call failed: {e}")
        raise RuntimeError(f"Chat call failed: {e}") from e

    content = reply.content if isinstance(reply.content, str) else str(reply.content)
    try:
        # pydantic's ValidationError is a ValueError
        result = output_schema.model_validate(extract_json_object(content))
    except ValueError as e:
        logger.warning(f"Reply did not parse into {output_schema.__name__}: {e}")
        raise RuntimeError(f"Reply did not parse into {output_schema.__name__}: {e}") from e

    logger.debug(f"JSON reply parsed into {output_schema.__name__}")
    return result
