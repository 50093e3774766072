"""Tests for the chunk model and chunk store.

Author: Hay Hoffman
"""

import json

import pytest
from pydantic import ValidationError

from models.chunk import Chunk, ChunkKind, create_chunk_from_dict, make_chunk_id
from src.exceptions import InvalidChunk, StoreIOError
from src.retrieval.chunk_store import ChunkStore


# =============================================================================
# Chunk model
# =============================================================================


class TestChunk:
    """Tests for the immutable Chunk record."""

    def test_equality_and_hash_by_id(self, chunk_factory):
        """Two windows with the same id compare equal regardless of content."""
        first = chunk_factory("same", "first window")
        second = chunk_factory("same", "second window")

        assert first == second
        assert len({first, second}) == 1

    def test_frozen(self, chunk_factory):
        """Chunks cannot be mutated after construction."""
        chunk = chunk_factory("c1", "content")
        with pytest.raises(ValidationError):
            chunk.content = "changed"

    def test_mappings_read_only(self, chunk_factory):
        """Structural mapping and extra metadata cannot be edited in place."""
        source = {"actionPath": "/login.do"}
        chunk = chunk_factory("c1", "content", structural_mapping=source, extra_metadata={"owner": "web"})

        with pytest.raises(TypeError):
            chunk.structural_mapping["actionPath"] = "/other.do"
        with pytest.raises(TypeError):
            chunk.extra_metadata["owner"] = "core"

        source["actionPath"] = "/changed.do"
        assert chunk.structural_mapping["actionPath"] == "/login.do"
        assert chunk.model_dump()["structural_mapping"] == {"actionPath": "/login.do"}
        assert isinstance(chunk.model_dump(mode="json")["extra_metadata"], dict)

    def test_imports_deduplicated_in_order(self, chunk_factory):
        chunk = chunk_factory("c1", "content", imports=("b.B", "a.A", "b.B"))
        assert chunk.imports == ("b.B", "a.A")

    def test_searchable_text_order(self, chunk_factory):
        """Package, imports, class context, annotations, then content."""
        chunk = chunk_factory(
            "c1",
            "void run() {}",
            package_or_namespace="com.acme",
            imports=("java.util.List",),
            enclosing_class_summary="class Runner",
            annotations=("@Override",),
        )

        assert chunk.searchable_text == (
            "package com.acme;\n"
            "import java.util.List;\n"
            "\n"
            "// Class context: class Runner\n"
            "@Override\n"
            "void run() {}"
        )

    def test_line_range_validated(self):
        with pytest.raises(ValidationError):
            Chunk(id="c1", content="x", kind=ChunkKind.METHOD, start_line=10, end_line=5)

    def test_kind_parse_spellings(self):
        assert ChunkKind.parse("TemplateFragment") == ChunkKind.TEMPLATE_FRAGMENT
        assert ChunkKind.parse("config_section") == ChunkKind.CONFIG_SECTION
        with pytest.raises(ValueError):
            ChunkKind.parse("Widget")

    def test_create_chunk_from_dict_invalid(self):
        """Validation failures surface as InvalidChunk."""
        with pytest.raises(InvalidChunk):
            create_chunk_from_dict({"id": "x", "content": "  ", "kind": "METHOD"})

    def test_make_chunk_id_stable(self):
        first = make_chunk_id("A.java", "body", "com.A.run", 3)
        assert first == make_chunk_id("A.java", "body", "com.A.run", 3)
        assert first != make_chunk_id("A.java", "body changed", "com.A.run", 3)


# =============================================================================
# Chunk store
# =============================================================================


class TestChunkStore:
    """Tests for ChunkStore put/get and persistence."""

    def test_put_get_exists(self, chunk_factory):
        store = ChunkStore()
        chunk = chunk_factory("c1", "content")

        store.put(chunk)

        assert store.exists("c1")
        assert store.get("c1") is chunk
        assert store.get("missing") is None
        assert len(store) == 1

    def test_identical_put_is_noop(self, chunk_factory):
        store = ChunkStore()
        store.put(chunk_factory("c1", "content"))
        store.put(chunk_factory("c1", "content"))
        assert len(store) == 1

    def test_id_collision_rejected(self, chunk_factory):
        """Same id with different content is an invalid chunk."""
        store = ChunkStore()
        store.put(chunk_factory("c1", "content"))

        with pytest.raises(InvalidChunk) as exc_info:
            store.put(chunk_factory("c1", "other content"))
        assert exc_info.value.chunk_id == "c1"

    def test_empty_content_rejected(self, chunk_factory):
        store = ChunkStore()
        chunk = chunk_factory("c1", "content").model_copy(update={"content": ""})
        with pytest.raises(InvalidChunk):
            store.put(chunk)

    def test_save_and_load(self, tmp_path, java_chunks):
        store = ChunkStore()
        for chunk in java_chunks:
            store.put(chunk)
        chunks_file = tmp_path / "chunks.json"

        store.save(chunks_file)
        reloaded = ChunkStore(chunks_file)

        assert [c.id for c in reloaded.all()] == [c.id for c in java_chunks]
        assert reloaded.get("login_action").structural_mapping["actionPath"] == "/login.do"

    def test_load_skips_invalid_records(self, tmp_path):
        chunks_file = tmp_path / "chunks.json"
        chunks_file.write_text(json.dumps([
            {"id": "ok", "content": "fine", "kind": "METHOD"},
            {"id": "bad", "content": "", "kind": "METHOD"},
        ]))

        store = ChunkStore(chunks_file)

        assert store.exists("ok")
        assert not store.exists("bad")

    def test_load_unreadable_file(self, tmp_path):
        chunks_file = tmp_path / "chunks.json"
        chunks_file.write_text("{not json")

        with pytest.raises(StoreIOError):
            ChunkStore(chunks_file)
