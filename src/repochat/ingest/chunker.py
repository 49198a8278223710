"""Overlapping line-window chunker for source files.

Windows are ``chunk_size`` lines long and start every
``chunk_size - overlap_size`` lines. The last window is cut at the last line
of the file and no window starts after a window has reached it, so a file
shorter than ``chunk_size`` yields exactly one chunk.

Example (45 lines, chunk_size=30, overlap_size=10): lines 1–30, 21–45.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from repochat.db.models import ChunkMetadata, CodeChunk, content_hash
from repochat.errors import ConfigError
from repochat.ids import new_uuid
from repochat.ingest.metadata import extract_imports, extract_metadata


@dataclass(frozen=True)
class LineWindow:
    """1-based inclusive line range plus its text."""

    start_line: int
    end_line: int
    text: str


def split_lines(text: str, chunk_size: int, overlap_size: int) -> Iterator[LineWindow]:
    """Yield overlapping line windows over *text*.

    Whitespace-only text yields nothing. Parameters are assumed validated
    (see LineChunker).
    """
    if not text.strip():
        return
    lines = text.splitlines()
    total = len(lines)
    step = chunk_size - overlap_size
    start = 0
    while start < total:
        end = min(start + chunk_size, total)
        yield LineWindow(start + 1, end, "\n".join(lines[start:end]))
        if end >= total:
            break
        start += step


@dataclass
class LineChunker:
    """Produce CodeChunk candidates for one file at a time.

    Args:
        chunk_size: Lines per chunk (>= 1).
        overlap_size: Lines shared by consecutive chunks (0 <= overlap < chunk_size).
        with_metadata: Run symbol extraction on each chunk.

    Raises:
        ConfigError: If the sizes are inconsistent.
    """

    chunk_size: int = 30
    overlap_size: int = 10
    with_metadata: bool = field(default=True)

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ConfigError("chunk_size must be >= 1")
        if self.overlap_size < 0:
            raise ConfigError("overlap_size must be >= 0")
        if self.overlap_size >= self.chunk_size:
            raise ConfigError(
                f"overlap_size ({self.overlap_size}) must be smaller than "
                f"chunk_size ({self.chunk_size})"
            )

    def chunk(
        self,
        repository_id: str,
        file_path: str,
        text: str,
        language: str,
    ) -> Iterator[CodeChunk]:
        """Lazily split *text* into ordered CodeChunks.

        Args:
            repository_id: Owning repository.
            file_path: Path relative to the repository root (POSIX separators).
            text: Decoded file content.
            language: Language detected for the file.

        Yields:
            CodeChunk per window, with content hash, imports and metadata set.
        """
        file_name = PurePosixPath(file_path).name
        for window in split_lines(text, self.chunk_size, self.overlap_size):
            if self.with_metadata:
                metadata = extract_metadata(window.text, language)
                imports = extract_imports(window.text, language)
            else:
                metadata, imports = ChunkMetadata(), []
            yield CodeChunk(
                id=new_uuid(),
                repository_id=repository_id,
                file_path=file_path,
                file_name=file_name,
                language=language,
                start_line=window.start_line,
                end_line=window.end_line,
                content=window.text,
                content_hash=content_hash(window.text),
                imports=imports,
                metadata=metadata,
            )
