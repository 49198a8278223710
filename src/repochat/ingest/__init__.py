"""repochat ingest: language detection, symbol extraction, line chunking, repository import."""

from repochat.ingest.chunker import LineChunker, split_lines
from repochat.ingest.importer import ImportResult, RepositoryImporter
from repochat.ingest.languages import detect_language
from repochat.ingest.metadata import extract_imports, extract_metadata

__all__ = [
    "ImportResult",
    "LineChunker",
    "RepositoryImporter",
    "detect_language",
    "extract_imports",
    "extract_metadata",
    "split_lines",
]
