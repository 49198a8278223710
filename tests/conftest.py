"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import threading

import pytest
from qdrant_client import QdrantClient

from repochat.db.connection import Database
from repochat.db.migrations import run_migrations
from repochat.db.models import CodeChunk, CodeRepository, content_hash
from repochat.db.store import DocumentStore
from repochat.errors import ServiceUnavailableError
from repochat.ids import deterministic_uuid
from repochat.vector.store import VectorStore

DIMS = 8


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with migrations applied, closed after test."""
    db = Database(tmp_path / ".repochat.db")
    conn = db.connect()
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def store(tmp_db):
    return DocumentStore(tmp_db)


@pytest.fixture
def vectors():
    vs = VectorStore(QdrantClient(location=":memory:"))
    yield vs
    vs.close()


@pytest.fixture
def embedder():
    return FakeEmbedder()


# ---------------------------------------------------------------------------
# Fakes and builders
# ---------------------------------------------------------------------------


def fake_vector(text: str, dims: int = DIMS) -> list[float]:
    """Deterministic non-zero vector derived from *text*."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(b + 1) / 256.0 for b in digest[:dims]]


class FakeEmbedder:
    """In-process stand-in for rag.llm_client.Embedder.

    Texts listed in *vectors* get that vector; any other text gets
    fake_vector(). A batch containing a text with *fail_marker* raises
    ServiceUnavailableError, like a provider outage.
    """

    model = "fake/embedding"

    def __init__(self, vectors: dict[str, list[float]] | None = None, fail_marker: str = "FAIL") -> None:
        self.vectors = dict(vectors or {})
        self.fail_marker = fail_marker
        self.batches: list[list[str]] = []
        self.queries: list[str] = []
        self._lock = threading.Lock()

    def _vector(self, text: str) -> list[float]:
        return list(self.vectors.get(text) or fake_vector(text))

    def embed_batch(self, texts, cancel=None):
        with self._lock:
            self.batches.append(list(texts))
        if cancel is not None and cancel.cancelled:
            return []
        if any(self.fail_marker in t for t in texts):
            raise ServiceUnavailableError("embed", self.model, "simulated outage")
        return [self._vector(t) for t in texts]

    def embed_query(self, text, cancel=None):
        with self._lock:
            self.queries.append(text)
        if cancel is not None and cancel.cancelled:
            return None
        return self._vector(text)

    @property
    def embedded_texts(self) -> list[str]:
        with self._lock:
            return [t for batch in self.batches for t in batch]


def make_repository(store: DocumentStore, repo_id: str = "repo-1", path: str | None = None) -> CodeRepository:
    repo = CodeRepository(id=repo_id, name=repo_id, path=path or f"/src/{repo_id}")
    store.add_repository(repo)
    return repo


def make_chunk(
    repository_id: str = "repo-1",
    content: str = "def hello():\n    return 1",
    *,
    file_path: str = "app/main.py",
    start_line: int = 1,
    language: str = "python",
    index: int = 0,
) -> CodeChunk:
    lines = content.count("\n") + 1
    return CodeChunk(
        id=deterministic_uuid(f"{repository_id}:{file_path}:{start_line}:{index}"),
        repository_id=repository_id,
        file_path=file_path,
        file_name=file_path.rsplit("/", 1)[-1],
        language=language,
        start_line=start_line,
        end_line=start_line + lines - 1,
        content=content,
        content_hash=content_hash(content),
    )
