"""Domain models for the document store."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum


class EmbeddingState(str, Enum):
    """Lifecycle of a repository's embedding run."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EmbeddingState.COMPLETED, EmbeddingState.FAILED)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


def content_hash(text: str) -> str:
    """SHA-256 hex digest of *text* (UTF-8)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class CodeRepository:
    id: str
    name: str
    path: str
    embedding_status: EmbeddingState = EmbeddingState.PENDING
    embedding_error: str | None = None
    embedded_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class RepositoryFile:
    repository_id: str
    path: str
    language: str
    content_hash: str
    size_bytes: int = 0
    line_count: int = 0
    imported_at: str | None = None


@dataclass
class ChunkMetadata:
    """Symbols extracted from a chunk's source text.

    Attributes:
        functions: Function and method names defined in the chunk.
        classes: Class, struct, interface and trait names.
        variables: Top-level variable names (capped).
        types: Type alias and type declaration names.
        complexity: Rough cyclomatic complexity (1 + decision points).
    """

    functions: list[str] = field(default_factory=list)
    classes: list[str] = field(default_factory=list)
    variables: list[str] = field(default_factory=list)
    types: list[str] = field(default_factory=list)
    complexity: int = 1

    def to_dict(self) -> dict:
        return {
            "functions": list(self.functions),
            "classes": list(self.classes),
            "variables": list(self.variables),
            "types": list(self.types),
            "complexity": self.complexity,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ChunkMetadata:
        return cls(
            functions=list(data.get("functions") or []),
            classes=list(data.get("classes") or []),
            variables=list(data.get("variables") or []),
            types=list(data.get("types") or []),
            complexity=int(data.get("complexity") or 1),
        )


@dataclass
class CodeChunk:
    """A contiguous, 1-based inclusive line range of one file.

    Only ``vector_id`` and ``embedded_at`` change after creation.
    """

    id: str
    repository_id: str
    file_path: str
    file_name: str
    language: str
    start_line: int
    end_line: int
    content: str
    content_hash: str
    imports: list[str] = field(default_factory=list)
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)
    vector_id: str | None = None
    embedded_at: str | None = None
    created_at: str | None = None

    @property
    def is_embedded(self) -> bool:
        return self.vector_id is not None

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1


@dataclass
class RetrievedChunk:
    """A chunk reference attached to an assistant message."""

    chunk_id: str
    file_path: str
    start_line: int
    end_line: int
    content: str
    similarity: float
    language: str = ""

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "content": self.content,
            "similarity": self.similarity,
            "language": self.language,
        }

    @classmethod
    def from_dict(cls, data: dict) -> RetrievedChunk:
        return cls(
            chunk_id=data["chunk_id"],
            file_path=data["file_path"],
            start_line=int(data["start_line"]),
            end_line=int(data["end_line"]),
            content=data.get("content", ""),
            similarity=float(data.get("similarity", 0.0)),
            language=data.get("language", ""),
        )


@dataclass
class ChatMessage:
    id: str
    role: MessageRole
    content: str
    timestamp: str | None = None
    tokens_used: int | None = None
    retrieved_chunks: list[RetrievedChunk] = field(default_factory=list)


@dataclass
class ChatSession:
    id: str
    repository_id: str | None = None
    title: str = "New Chat"
    messages: list[ChatMessage] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def message_count(self) -> int:
        return len(self.messages)
