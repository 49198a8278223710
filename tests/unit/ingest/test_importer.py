"""Tests for RepositoryImporter."""

from __future__ import annotations

from pathlib import Path

import pytest

from repochat.errors import RepositoryNotFoundError
from repochat.ingest.chunker import LineChunker
from repochat.ingest.importer import RepositoryImporter


def _write(root: Path, rel: str, text: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def checkout(tmp_path):
    root = tmp_path / "myrepo"
    _write(root, "app/main.py", "import os\n\ndef main():\n    return os.getcwd()\n")
    _write(root, "app/util.go", "package app\n\nfunc Helper() {}\n")
    _write(root, "README.md", "# My repo\n")
    _write(root, "node_modules/lib/index.js", "module.exports = 1;\n")
    _write(root, "logo.png", "not really a png")
    return root


@pytest.fixture
def removed():
    return []


@pytest.fixture
def importer(store, removed):
    return RepositoryImporter(
        store,
        LineChunker(chunk_size=30, overlap_size=10),
        remove_vectors=removed.extend,
    )


def test_first_import_creates_repository_and_chunks(importer, store, checkout):
    result = importer.import_directory(checkout)

    repo = store.get_repository(result.repository_id)
    assert repo.name == "myrepo"
    assert repo.path == str(checkout.resolve())
    assert result.files_added == 3
    assert result.chunks_created == 3
    assert result.changed
    assert [f.path for f in store.list_files(repo.id)] == ["README.md", "app/main.py", "app/util.go"]


def test_skip_dirs_and_unknown_extensions_ignored(importer, store, checkout):
    result = importer.import_directory(checkout)
    paths = {c.file_path for c in store.list_chunks(result.repository_id)}
    assert "node_modules/lib/index.js" not in paths
    assert "logo.png" not in paths


def test_reimport_unchanged_is_noop(importer, checkout):
    first = importer.import_directory(checkout)
    second = importer.import_directory(checkout)

    assert second.repository_id == first.repository_id
    assert second.files_unchanged == 3
    assert second.chunks_created == 0
    assert not second.changed


def test_changed_file_rechunked_and_vectors_removed(importer, store, checkout, removed):
    first = importer.import_directory(checkout)
    old = [c for c in store.list_chunks(first.repository_id) if c.file_path == "app/main.py"]
    store.mark_embedded([(old[0].id, "vec-main")])

    _write(checkout, "app/main.py", "def main():\n    return 2\n")
    result = importer.import_directory(checkout)

    assert result.files_updated == 1
    assert result.files_unchanged == 2
    assert removed == ["vec-main"]
    new = [c for c in store.list_chunks(first.repository_id) if c.file_path == "app/main.py"]
    assert len(new) == 1
    assert new[0].id != old[0].id
    assert new[0].vector_id is None


def test_deleted_file_removed(importer, store, checkout):
    first = importer.import_directory(checkout)
    (checkout / "app" / "util.go").unlink()

    result = importer.import_directory(checkout)

    assert result.files_removed == 1
    assert store.get_file(first.repository_id, "app/util.go") is None
    assert all(c.file_path != "app/util.go" for c in store.list_chunks(first.repository_id))


def test_oversized_and_binary_files_skipped(store, tmp_path):
    root = tmp_path / "repo"
    _write(root, "big.py", "x = 1\n" * 100)
    (root / "blob.c").write_bytes(b"int x;\x00\x00")
    importer = RepositoryImporter(store, LineChunker(), max_file_bytes=50)

    result = importer.import_directory(root)

    assert result.files_skipped == 2
    assert result.files_added == 0


def test_exclude_patterns(store, checkout):
    importer = RepositoryImporter(store, LineChunker(), exclude=["*.md"])
    result = importer.import_directory(checkout)
    assert store.get_file(result.repository_id, "README.md") is None


def test_unknown_repository_id_raises(importer, checkout):
    with pytest.raises(RepositoryNotFoundError):
        importer.import_directory(checkout, repository_id="missing")


def test_not_a_directory_raises(importer, tmp_path):
    with pytest.raises(FileNotFoundError):
        importer.import_directory(tmp_path / "nope")
