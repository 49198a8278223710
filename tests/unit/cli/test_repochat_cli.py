"""Tests for the repochat CLI commands."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from conftest import DIMS, FakeEmbedder
from typer.testing import CliRunner

from repochat.cli.main import app
from repochat.db.connection import Database
from repochat.db.store import DocumentStore

runner = CliRunner()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def project(tmp_path: Path) -> Path:
    proj = tmp_path / "proj"
    proj.mkdir()
    (proj / "repochat.yaml").write_text(
        yaml.dump({"storage": {"qdrant_path": ":memory:"}, "embedding": {"dimensions": DIMS}}),
        encoding="utf-8",
    )
    return proj


@pytest.fixture
def checkout(tmp_path: Path) -> Path:
    root = tmp_path / "shop"
    root.mkdir()
    (root / "tax.py").write_text("def vat(amount):\n    return amount * 0.21\n", encoding="utf-8")
    (root / "cart.js").write_text("export function total(items) {\n  return 0;\n}\n", encoding="utf-8")
    return root


@pytest.fixture
def api_keys(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")


def _invoke(*args: str):
    return runner.invoke(app, list(args))


def _repository_ids(project: Path) -> list[str]:
    conn = Database(project / ".repochat.db").connect()
    try:
        return [r.id for r in DocumentStore(conn).list_repositories()]
    finally:
        conn.close()


def _fake_embedder():
    return patch("repochat.service.Embedder", side_effect=lambda *a, **kw: FakeEmbedder())


# ---------------------------------------------------------------------------
# version
# ---------------------------------------------------------------------------


def test_version_flag() -> None:
    result = _invoke("--version")
    assert result.exit_code == 0
    assert "repochat" in result.output


def test_version_command() -> None:
    result = _invoke("version")
    assert result.exit_code == 0
    assert result.output.startswith("repochat ")


# ---------------------------------------------------------------------------
# import / status
# ---------------------------------------------------------------------------


def test_status_without_repositories(project: Path) -> None:
    result = _invoke("status", "--project", str(project))
    assert result.exit_code == 0
    assert "No repositories imported yet" in result.output


def test_import_creates_repository(project: Path, checkout: Path) -> None:
    result = _invoke("import", str(checkout), "--project", str(project))

    assert result.exit_code == 0, result.output
    assert "2 added" in result.output
    [repo_id] = _repository_ids(project)
    assert repo_id in result.output


def test_import_then_status_lists_repository(project: Path, checkout: Path) -> None:
    _invoke("import", str(checkout), "--name", "shop-app", "--project", str(project))
    result = _invoke("status", "--project", str(project))
    assert result.exit_code == 0
    assert "shop-app" in result.output
    assert "pending" in result.output


def test_status_single_repository(project: Path, checkout: Path) -> None:
    _invoke("import", str(checkout), "--project", str(project))
    [repo_id] = _repository_ids(project)

    result = _invoke("status", repo_id, "--project", str(project))

    assert result.exit_code == 0
    assert "python (1)" in result.output
    assert "javascript (1)" in result.output


def test_import_not_a_directory(project: Path, tmp_path: Path) -> None:
    result = _invoke("import", str(tmp_path / "missing"), "--project", str(project))
    assert result.exit_code == 1
    assert "Not a directory" in result.output


def test_invalid_config_exits_1(project: Path, checkout: Path) -> None:
    (project / "repochat.yaml").write_text(
        yaml.dump({"chunking": {"chunk_size": 5, "overlap_size": 5}}), encoding="utf-8"
    )
    result = _invoke("import", str(checkout), "--project", str(project))
    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


# ---------------------------------------------------------------------------
# embed
# ---------------------------------------------------------------------------


def test_import_with_embed(project: Path, checkout: Path, api_keys) -> None:
    with _fake_embedder():
        result = _invoke("import", str(checkout), "--embed", "--project", str(project))

    assert result.exit_code == 0, result.output
    assert "Embedded 2 chunks" in result.output


def test_embed_without_api_key(project: Path, checkout: Path, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    _invoke("import", str(checkout), "--project", str(project))
    [repo_id] = _repository_ids(project)

    result = _invoke("embed", repo_id, "--project", str(project))

    assert result.exit_code == 1
    assert "OPENAI_API_KEY" in result.output


def test_embed_unknown_repository(project: Path, api_keys) -> None:
    with _fake_embedder():
        result = _invoke("embed", "no-such-repo", "--project", str(project))
    assert result.exit_code == 1
    assert "Repository not found" in result.output


# ---------------------------------------------------------------------------
# search
# ---------------------------------------------------------------------------


def test_text_search_finds_chunk(project: Path, checkout: Path) -> None:
    _invoke("import", str(checkout), "--project", str(project))
    [repo_id] = _repository_ids(project)

    result = _invoke("search", "vat", "--repo", repo_id, "--mode", "text", "--project", str(project))

    assert result.exit_code == 0, result.output
    assert "No matching chunks" not in result.output


def test_text_search_no_match(project: Path, checkout: Path) -> None:
    _invoke("import", str(checkout), "--project", str(project))
    [repo_id] = _repository_ids(project)

    result = _invoke(
        "search", "zebra", "--repo", repo_id, "--mode", "text", "--project", str(project)
    )

    assert result.exit_code == 0
    assert "No matching chunks" in result.output


def test_text_search_all_repositories(project: Path, checkout: Path) -> None:
    _invoke("import", str(checkout), "--project", str(project))

    result = _invoke("search", "vat", "--mode", "text", "--project", str(project))

    assert result.exit_code == 0, result.output
    assert "No matching chunks" not in result.output


def test_search_limit_out_of_range(project: Path, checkout: Path) -> None:
    _invoke("import", str(checkout), "--project", str(project))
    [repo_id] = _repository_ids(project)

    result = _invoke(
        "search", "vat", "--repo", repo_id, "--mode", "text", "-n", "500", "--project", str(project)
    )

    assert result.exit_code == 1
    assert "between 1 and 100" in result.output


def test_search_unknown_repository(project: Path) -> None:
    result = _invoke("search", "vat", "--repo", "ghost", "--mode", "text", "--project", str(project))
    assert result.exit_code == 1
    assert "Repository not found" in result.output


# ---------------------------------------------------------------------------
# ask
# ---------------------------------------------------------------------------


def _fake_stream(*parts: str):
    def _stream(model, messages, **kwargs):
        yield from parts

    return _stream


def test_ask_streams_answer(project: Path, checkout: Path, api_keys) -> None:
    _invoke("import", str(checkout), "--project", str(project))
    [repo_id] = _repository_ids(project)

    with _fake_embedder(), patch(
        "repochat.rag.chat.stream_complete", side_effect=_fake_stream("VAT is ", "21%.")
    ), patch("repochat.rag.chat.count_tokens", return_value=5):
        result = _invoke(
            "ask", "How is vat computed?", "--repo", repo_id, "--session", "s-1",
            "--project", str(project),
        )

    assert result.exit_code == 0, result.output
    assert "VAT is 21%." in result.output
    assert "Session: s-1" in result.output


def test_ask_without_api_key(project: Path, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    result = _invoke("ask", "anything?", "--project", str(project))
    assert result.exit_code == 1
    assert "No API key" in result.output
