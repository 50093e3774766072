"""Pydantic models for chunk data structures.

This module defines the chunk schema shared by every index: the lexical index,
the vector index and the relationship graph are all populated from the same
immutable Chunk records. Chunks are produced by format-specific parsers
(source code, page templates, XML configuration) and consumed here as-is.

Author: Hay Hoffman
Version: 2.0
"""

import hashlib
import re
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator

from src.exceptions import InvalidChunk

__all__ = [
    "ChunkKind",
    "Chunk",
    "create_chunk_from_dict",
    "make_chunk_id",
]


class ChunkKind(str, Enum):
    """Closed set of retrievable unit kinds."""

    METHOD = "METHOD"
    CLASS = "CLASS"
    TEMPLATE_FRAGMENT = "TEMPLATE_FRAGMENT"
    CONFIG_SECTION = "CONFIG_SECTION"
    IMPORT_BLOCK = "IMPORT_BLOCK"
    FIELD = "FIELD"

    @classmethod
    def parse(cls, value: "str | ChunkKind") -> "ChunkKind":
        """Resolve a kind from its value or a spelling like 'TemplateFragment'."""
        if isinstance(value, cls):
            return value
        normalized = re.sub(r"[^A-Za-z]", "", str(value)).upper()
        for kind in cls:
            if kind.value.replace("_", "") == normalized:
                return kind
        raise ValueError(f"Unknown chunk kind: {value}")


class Chunk(BaseModel):
    """Atomic retrievable unit of code or configuration.

    A chunk is immutable once constructed. Equality and hashing use ``id`` only,
    so two sliding windows of one large method (same ``qualified_name``, different
    content) are distinct chunks.
    """

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "id": "3f2a9c0d1e4b5a6f",
                "content": "public boolean validate(String user, String pass) { ... }",
                "kind": "METHOD",
                "file_path": "src/main/java/com/acme/auth/LoginService.java",
                "qualified_name": "com.acme.auth.LoginService.validate",
                "start_line": 40,
                "end_line": 58,
                "imports": ["com.acme.dao.UserDAO"],
                "package_or_namespace": "com.acme.auth",
                "api_call_sequence": ["userDAO.findByName", "passwordEncoder.matches"],
                "structural_mapping": {"actionPath": "/login.do"},
            }
        },
    )

    # Core identification
    id: str = Field(..., description="Unique chunk identifier (MD5 hash)")
    content: str = Field(..., description="Raw text of the unit")
    kind: ChunkKind = Field(..., description="Unit kind (method, class, template fragment, ...)")

    # File location
    file_path: str = Field(default="", description="Relative path from repository root")
    qualified_name: str | None = Field(default=None, description="Fully qualified name, not unique")
    start_line: int = Field(default=0, ge=0, description="Starting line number in original file")
    end_line: int = Field(default=0, ge=0, description="Ending line number in original file")

    # Structural context
    imports: tuple[str, ...] = Field(default=(), description="Referenced symbols (set semantics)")
    annotations: tuple[str, ...] = Field(default=(), description="Declaration-level markers")
    enclosing_class_summary: str | None = Field(
        default=None,
        description="One-line summary of the enclosing class declaration"
    )
    package_or_namespace: str | None = Field(default=None, description="Package or namespace")
    api_call_sequence: tuple[str, ...] = Field(
        default=(),
        description="Call targets observed in the unit, in source order"
    )
    structural_mapping: Mapping[str, str] = Field(
        default_factory=dict,
        validate_default=True,
        description="Framework routing facts (e.g. actionPath, includePath)"
    )
    extra_metadata: Mapping[str, Any] = Field(
        default_factory=dict,
        validate_default=True,
        description="Extension fields not used for ranking"
    )

    @field_validator('id')
    @classmethod
    def validate_id_not_empty(cls, v: str) -> str:
        """Ensure id is not blank."""
        if not v or not v.strip():
            raise ValueError("Chunk id cannot be empty")
        return v

    @field_validator('content')
    @classmethod
    def validate_content_not_empty(cls, v: str) -> str:
        """Ensure content is not blank."""
        if not v or not v.strip():
            raise ValueError("Chunk content cannot be empty")
        return v

    @field_validator('end_line')
    @classmethod
    def validate_line_range(cls, v: int, info) -> int:
        """Ensure end_line >= start_line."""
        start_line = info.data.get('start_line', 0)
        if v < start_line:
            raise ValueError(f"end_line ({v}) must be >= start_line ({start_line})")
        return v

    @field_validator('imports')
    @classmethod
    def deduplicate_imports(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Drop repeated imports, keeping first occurrence order."""
        return tuple(dict.fromkeys(v))

    @field_validator('structural_mapping', 'extra_metadata')
    @classmethod
    def freeze_mapping(cls, v: Mapping[str, Any]) -> Mapping[str, Any]:
        """Store a read-only copy so the mapping cannot change after construction."""
        return MappingProxyType(dict(v))

    @field_serializer('structural_mapping', 'extra_metadata')
    def serialize_mapping(self, v: Mapping[str, Any]) -> dict[str, Any]:
        return dict(v)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Chunk):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def simple_name(self) -> str:
        """Last segment of the qualified name (empty if unknown)."""
        if not self.qualified_name:
            return ""
        return self.qualified_name.rsplit(".", 1)[-1]

    @property
    def searchable_text(self) -> str:
        """Composite text view indexed by both the lexical and vector indices.

        Order: package line, import lines and a blank line, enclosing class
        context, annotations, content.
        """
        parts: list[str] = []

        if self.package_or_namespace:
            parts.append(f"package {self.package_or_namespace};\n")

        if self.imports:
            for imp in self.imports:
                parts.append(f"import {imp};\n")
            parts.append("\n")

        if self.enclosing_class_summary:
            parts.append(f"// Class context: {self.enclosing_class_summary}\n")

        for annotation in self.annotations:
            parts.append(f"{annotation}\n")

        parts.append(self.content)
        return "".join(parts)

    @property
    def citation(self) -> str:
        """Format citation string (path:start-end)."""
        return f"{self.file_path}:{self.start_line}-{self.end_line}"


def create_chunk_from_dict(data: dict) -> Chunk:
    """Factory function to create a chunk model from a dictionary.

    Args:
        data: Dictionary containing chunk fields (``kind`` may be a ChunkKind
            value or name, case-insensitive)

    Returns:
        Validated Chunk instance

    Raises:
        InvalidChunk: If required fields are missing or invalid
    """
    payload = dict(data)
    kind = payload.get("kind")
    if isinstance(kind, str):
        try:
            payload["kind"] = ChunkKind.parse(kind)
        except ValueError:
            pass  # reported by model validation below

    try:
        return Chunk.model_validate(payload)
    except ValidationError as e:
        raise InvalidChunk(
            f"Invalid chunk record: {e.errors()[0].get('msg', e)}",
            chunk_id=payload.get("id") or None,
        ) from e


def make_chunk_id(
    file_path: str,
    content: str,
    qualified_name: str | None = None,
    start_line: int = 0,
) -> str:
    """Build a stable chunk id from its location and content.

    The same logical unit at the same version always yields the same id; any
    content change (including a different sliding window) yields a new one.

    Args:
        file_path: Relative source path
        content: Raw chunk text
        qualified_name: Optional fully qualified name
        start_line: Starting line of the unit

    Returns:
        Hex MD5 digest
    """
    key = "\x1f".join([file_path, qualified_name or "", str(start_line), content])
    return hashlib.md5(key.encode("utf-8")).hexdigest()
