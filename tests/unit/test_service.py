"""Tests for RepochatService wiring: import, embed, search and chat through one facade."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import DIMS

from repochat.config import RepochatConfig
from repochat.db.models import EmbeddingState
from repochat.errors import (
    InvalidArgumentError,
    RepositoryNotFoundError,
    SessionNotFoundError,
)
from repochat.rag.llm_client import Completion
from repochat.service import RepochatService


def _config() -> RepochatConfig:
    cfg = RepochatConfig()
    cfg.embedding.dimensions = DIMS
    cfg.storage.qdrant_path = ":memory:"
    cfg.retrieval.default_limit = 5
    return cfg


@pytest.fixture
def checkout(tmp_path) -> Path:
    root = tmp_path / "shop"
    (root / "billing").mkdir(parents=True)
    (root / "billing" / "invoice.py").write_text(
        "class Invoice:\n    def total(self):\n        return sum(self.lines)\n",
        encoding="utf-8",
    )
    (root / "billing" / "tax.py").write_text(
        "def vat(amount):\n    return amount * 0.21\n", encoding="utf-8"
    )
    return root


@pytest.fixture
def svc(store, vectors, embedder):
    service = RepochatService(_config(), store, vectors, embedder)
    yield service
    service.stop()


def test_import_then_process_then_search(svc, checkout):
    result = svc.import_repository(checkout)
    status = svc.process_repository(result.repository_id)

    assert status.state is EmbeddingState.COMPLETED
    hits = svc.hybrid_search(result.repository_id, "vat amount", vector_weight=0.3)
    assert hits
    assert hits[0].chunk.file_path == "billing/tax.py"
    assert len(svc.vector_search(result.repository_id, "invoice")) <= 5


def test_reimport_with_changes_resets_state(svc, checkout):
    repo_id = svc.import_repository(checkout).repository_id
    svc.process_repository(repo_id)
    (checkout / "billing" / "tax.py").write_text("def vat(a):\n    return a\n", encoding="utf-8")

    svc.import_repository(checkout)

    assert svc.store.get_repository(repo_id).embedding_status is EmbeddingState.PENDING
    stats = svc.get_processing_stats(repo_id)
    assert stats.pending_chunks == 1


def test_search_without_repository_uses_every_checkout(svc, checkout, tmp_path):
    other = tmp_path / "ledger"
    other.mkdir()
    (other / "vat.py").write_text("VAT_RATE = 0.21\n", encoding="utf-8")
    first = svc.import_repository(checkout).repository_id
    second = svc.import_repository(other).repository_id

    hits = svc.text_search(None, "vat")

    assert {h.chunk.repository_id for h in hits} == {first, second}


def test_explicit_limit_is_validated(svc, checkout):
    repo_id = svc.import_repository(checkout).repository_id
    with pytest.raises(InvalidArgumentError):
        svc.text_search(repo_id, "vat", limit=0)


def test_delete_repository_removes_everything(svc, checkout, vectors):
    repo_id = svc.import_repository(checkout).repository_id
    svc.process_repository(repo_id)

    svc.delete_repository(repo_id)

    assert svc.store.get_repository(repo_id) is None
    assert vectors.count(svc.config.storage.collection, repo_id) == 0
    with pytest.raises(RepositoryNotFoundError):
        svc.delete_repository(repo_id)


def test_delete_repository_never_embedded(svc, checkout, vectors):
    repo_id = svc.import_repository(checkout).repository_id
    assert not vectors.exists(svc.config.storage.collection)

    svc.delete_repository(repo_id)

    assert svc.store.get_repository(repo_id) is None
    assert svc.store.count_chunks(repo_id) == 0


def test_chat_round_trip(svc, checkout):
    repo_id = svc.import_repository(checkout).repository_id
    with patch("repochat.rag.chat.complete", return_value=Completion("Multiply by 0.21.", 20)):
        session = svc.process_message("chat-1", "How is vat computed?", repository_id=repo_id)

    assert session.messages[-1].content == "Multiply by 0.21."
    assert svc.get_session("chat-1").title == "How is vat computed?"
    assert [s.id for s in svc.list_sessions(repo_id)] == ["chat-1"]


def test_get_session_missing(svc):
    with pytest.raises(SessionNotFoundError):
        svc.get_session("nope")


def test_from_config_resolves_paths(tmp_path):
    cfg = _config()
    with RepochatService.from_config(cfg, tmp_path) as service:
        assert service.store.list_repositories() == []
    assert (tmp_path / ".repochat.db").exists()
