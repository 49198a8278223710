"""Tests for the overlapping line chunker."""

from __future__ import annotations

import pytest

from repochat.db.models import content_hash
from repochat.errors import ConfigError
from repochat.ingest.chunker import LineChunker, split_lines


def _numbered(n: int) -> str:
    return "\n".join(f"line {i}" for i in range(1, n + 1))


# ------------------------------------------------------------------
# split_lines
# ------------------------------------------------------------------


def test_45_lines_gives_two_windows():
    windows = list(split_lines(_numbered(45), 30, 10))
    assert [(w.start_line, w.end_line) for w in windows] == [(1, 30), (21, 45)]


def test_short_file_gives_single_window():
    windows = list(split_lines(_numbered(5), 30, 10))
    assert [(w.start_line, w.end_line) for w in windows] == [(1, 5)]
    assert windows[0].text == _numbered(5)


def test_exact_chunk_size_gives_single_window():
    assert len(list(split_lines(_numbered(30), 30, 10))) == 1


def test_windows_cover_every_line_in_order():
    windows = list(split_lines(_numbered(100), 30, 10))
    assert windows[0].start_line == 1
    assert windows[-1].end_line == 100
    for prev, nxt in zip(windows, windows[1:]):
        assert nxt.start_line == prev.start_line + 20
        assert nxt.start_line <= prev.end_line + 1


def test_zero_overlap_windows_are_disjoint():
    windows = list(split_lines(_numbered(10), 4, 0))
    assert [(w.start_line, w.end_line) for w in windows] == [(1, 4), (5, 8), (9, 10)]


def test_window_text_matches_lines():
    window = list(split_lines(_numbered(45), 30, 10))[1]
    assert window.text.splitlines()[0] == "line 21"
    assert window.text.splitlines()[-1] == "line 45"


@pytest.mark.parametrize("text", ["", "   ", "\n\n\t\n"])
def test_blank_text_yields_nothing(text):
    assert list(split_lines(text, 30, 10)) == []


# ------------------------------------------------------------------
# LineChunker
# ------------------------------------------------------------------


def test_chunker_rejects_overlap_equal_to_size():
    with pytest.raises(ConfigError):
        LineChunker(chunk_size=10, overlap_size=10)


def test_chunker_rejects_negative_overlap():
    with pytest.raises(ConfigError):
        LineChunker(chunk_size=10, overlap_size=-1)


def test_chunker_rejects_zero_size():
    with pytest.raises(ConfigError):
        LineChunker(chunk_size=0, overlap_size=0)


def test_chunker_builds_code_chunks():
    text = "import os\n\n\ndef main():\n    if os.environ:\n        return 1\n"
    chunks = list(LineChunker().chunk("repo-1", "src/app/main.py", text, "python"))

    assert len(chunks) == 1
    chunk = chunks[0]
    assert chunk.repository_id == "repo-1"
    assert chunk.file_path == "src/app/main.py"
    assert chunk.file_name == "main.py"
    assert chunk.language == "python"
    assert (chunk.start_line, chunk.end_line) == (1, 6)
    assert chunk.content_hash == content_hash(chunk.content)
    assert chunk.imports == ["os"]
    assert chunk.metadata.functions == ["main"]
    assert chunk.metadata.complexity == 2
    assert chunk.vector_id is None


def test_chunker_ids_are_unique():
    chunks = list(LineChunker(chunk_size=5, overlap_size=2).chunk("r", "a.py", _numbered(20), "python"))
    assert len({c.id for c in chunks}) == len(chunks)


def test_chunker_without_metadata():
    chunks = list(
        LineChunker(with_metadata=False).chunk("r", "a.py", "def f():\n    pass", "python")
    )
    assert chunks[0].metadata.functions == []
    assert chunks[0].imports == []
