"""Shared fixtures for the retrieval engine tests.

Author: Hay Hoffman
"""

import hashlib

import numpy as np
import pytest

from models.chunk import Chunk, ChunkKind
from src.retrieval.tokenizer import tokenize_code_aware

EMBEDDING_DIMENSION = 64


class HashingEmbedder:
    """Deterministic bag-of-words embedder (md5 bucket per token)."""

    def __init__(self, dimension: int = EMBEDDING_DIMENSION):
        self.dimension = dimension
        self.calls = 0

    def __call__(self, text: str) -> np.ndarray:
        self.calls += 1
        vector = np.zeros(self.dimension)
        for token in tokenize_code_aware(text):
            bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dimension
            vector[bucket] += 1.0
        return vector


def make_chunk(chunk_id: str, content: str, kind: ChunkKind = ChunkKind.METHOD, **fields) -> Chunk:
    """Build a chunk with sensible location defaults."""
    fields.setdefault("file_path", f"src/{chunk_id}.java")
    fields.setdefault("start_line", 1)
    fields.setdefault("end_line", 10)
    return Chunk(id=chunk_id, content=content, kind=kind, **fields)


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def login_chunks() -> list[Chunk]:
    """Three-chunk corpus: login method, logout method, service class."""
    return [
        make_chunk("A", "login validates credentials"),
        make_chunk("B", "logout clears session"),
        make_chunk("C", "UserService class", kind=ChunkKind.CLASS),
    ]


@pytest.fixture
def java_chunks() -> list[Chunk]:
    """Small Java web-application corpus with structural context."""
    return [
        make_chunk(
            "svc_find",
            "public User findUser(String name) { return userDao.findByName(name); }",
            qualified_name="com.acme.service.UserService.findUser",
            package_or_namespace="com.acme.service",
            imports=("com.acme.dao.UserDao",),
            enclosing_class_summary="public class UserService implements Service",
            api_call_sequence=("userDao.findByName",),
        ),
        make_chunk(
            "svc_save",
            "public void saveUser(User user) { userDao.save(user); }",
            qualified_name="com.acme.service.UserService.saveUser",
            package_or_namespace="com.acme.service",
            imports=("com.acme.dao.UserDao",),
            enclosing_class_summary="public class UserService implements Service",
            api_call_sequence=("userDao.save",),
        ),
        make_chunk(
            "dao_find",
            "public User findByName(String name) { return session.get(User.class, name); }",
            qualified_name="com.acme.dao.UserDao.findByName",
            package_or_namespace="com.acme.dao",
            imports=("org.hibernate.Session",),
            api_call_sequence=("session.get",),
        ),
        make_chunk(
            "login_action",
            "public ActionForward execute(ActionMapping mapping, ActionForm form) "
            "{ User user = userService.findUser(form.getName()); return mapping.findForward(\"success\"); }",
            qualified_name="com.acme.web.LoginAction.execute",
            package_or_namespace="com.acme.web",
            imports=("org.apache.struts.action.Action",),
            enclosing_class_summary="public class LoginAction extends Action",
            api_call_sequence=("userService.findUser", "mapping.findForward"),
            structural_mapping={"actionPath": "/login.do", "forward": "/WEB-INF/jsp/login.jsp"},
        ),
        make_chunk(
            "login_jsp",
            "<form action=\"/login.do\"><input name=\"name\"/></form>",
            kind=ChunkKind.TEMPLATE_FRAGMENT,
            file_path="web/WEB-INF/jsp/login.jsp",
            structural_mapping={"formAction": "/login.do"},
        ),
    ]


@pytest.fixture
def chunk_factory():
    return make_chunk
