"""Service facade: builds every component from RepochatConfig and exposes the caller-facing operations.

Usage:
    with RepochatService.from_config(load_config(root), root) as svc:
        result = svc.import_repository(root)
        svc.queue_repository(result.repository_id)
"""

from __future__ import annotations

import logging
import os
from collections.abc import Generator
from pathlib import Path

from repochat.cancel import CancelToken
from repochat.config import RepochatConfig
from repochat.db.connection import Database
from repochat.db.migrations import run_migrations
from repochat.db.models import ChatSession, EmbeddingState
from repochat.db.store import DocumentStore
from repochat.errors import RepositoryNotFoundError, SessionNotFoundError
from repochat.ingest.chunker import LineChunker
from repochat.ingest.importer import ImportResult, RepositoryImporter
from repochat.pipeline.embedding import (
    PRIORITY_NORMAL,
    EmbeddingPipeline,
    ProcessingStats,
    QueueResult,
)
from repochat.pipeline.status import EmbeddingStatus, StatusTracker
from repochat.rag.chat import ChatOrchestrator, StreamChunk
from repochat.rag.llm_client import Embedder
from repochat.rag.retriever import HybridRetriever, SearchResult
from repochat.vector.store import VectorStore

logger = logging.getLogger(__name__)


class RepochatService:
    """All repochat operations behind one object.

    Components are injected so tests can swap the vector store or embedder;
    ``from_config`` builds the real ones.
    """

    def __init__(
        self,
        config: RepochatConfig,
        store: DocumentStore,
        vectors: VectorStore,
        embedder: Embedder,
    ) -> None:
        self.config = config
        self.store = store
        self.vectors = vectors
        self.embedder = embedder
        self.tracker = StatusTracker(ttl_seconds=config.pipeline.status_ttl_seconds)
        self.pipeline = EmbeddingPipeline(
            store,
            vectors,
            embedder,
            collection=config.storage.collection,
            dimensions=config.embedding.dimensions,
            batch_size=config.pipeline.embedding_batch_size,
            workers=config.pipeline.embedding_workers_num,
            queue_capacity=config.pipeline.queue_capacity,
            overflow_policy=config.pipeline.overflow_policy,
            max_failure_ratio=config.pipeline.max_failure_ratio,
            tracker=self.tracker,
        )
        self.retriever = HybridRetriever(store, vectors, embedder, config.storage.collection)
        self.chat = ChatOrchestrator(
            store,
            self.retriever,
            model=config.chat.model,
            context_chunks=config.chat.context_chunks,
            vector_weight=config.chat.vector_weight,
            max_prompt_length=config.chat.max_prompt_length,
            max_tokens=config.chat.max_tokens,
            temperature=config.chat.temperature,
            timeout=config.timeouts.completion,
        )
        self.importer = RepositoryImporter(
            store,
            LineChunker(
                chunk_size=config.chunking.chunk_size,
                overlap_size=config.chunking.overlap_size,
            ),
            max_file_bytes=config.chunking.max_file_bytes,
            remove_vectors=self.pipeline.delete_vectors,
        )

    @classmethod
    def from_config(
        cls, config: RepochatConfig, project_dir: Path | None = None
    ) -> RepochatService:
        """Open the document store and vector index named in *config*.

        Relative storage paths are resolved against *project_dir* (default: cwd).
        """
        base = project_dir or Path.cwd()
        db_path = _resolve(config.storage.db_path, base)
        conn = Database(db_path).connect()
        run_migrations(conn)

        vectors = VectorStore.connect(
            url=config.storage.qdrant_url,
            path=_resolve(config.storage.qdrant_path, base),
            api_key=os.getenv("QDRANT_API_KEY"),
            timeout=config.timeouts.vector_index,
        )
        embedder = Embedder(
            config.embedding.model,
            timeout=config.timeouts.embedding,
            requests_per_second=config.embedding.requests_per_second,
            cache_size=config.embedding.query_cache_size,
        )
        return cls(config, DocumentStore(conn), vectors, embedder)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the embedding workers and the status sweeper."""
        self.tracker.start()
        self.pipeline.start()

    def stop(self) -> None:
        self.pipeline.stop()
        self.tracker.stop()

    def close(self) -> None:
        """Stop workers and release the vector client and database connection."""
        self.stop()
        self.vectors.close()
        self.store.close()

    def __enter__(self) -> RepochatService:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    def import_repository(
        self,
        root: Path,
        *,
        name: str | None = None,
        repository_id: str | None = None,
    ) -> ImportResult:
        """Import or refresh a checkout. A changed repository goes back to ``pending``."""
        result = self.importer.import_directory(root, name=name, repository_id=repository_id)
        if result.changed:
            self.store.set_embedding_state(result.repository_id, EmbeddingState.PENDING)
        return result

    def delete_repository(self, repository_id: str) -> None:
        """Delete a repository, its vectors, chunks and chat sessions.

        Raises:
            RepositoryNotFoundError: If the repository does not exist.
        """
        if self.store.get_repository(repository_id) is None:
            raise RepositoryNotFoundError(repository_id)
        self.pipeline.delete_repository_vectors(repository_id)
        self.store.delete_repository(repository_id)
        logger.info("Deleted repository %s", repository_id)

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    def queue_repository(self, repository_id: str, priority: int = PRIORITY_NORMAL) -> QueueResult:
        return self.pipeline.queue_repository(repository_id, priority)

    def process_repository(self, repository_id: str) -> EmbeddingStatus:
        return self.pipeline.process_repository(repository_id)

    def get_embedding_status(self, repository_id: str) -> EmbeddingStatus:
        return self.pipeline.get_status(repository_id)

    def get_processing_stats(self, repository_id: str) -> ProcessingStats:
        return self.pipeline.get_stats(repository_id)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def vector_search(
        self, repository_id: str | None, query: str, limit: int | None = None
    ) -> list[SearchResult]:
        return self.retriever.vector_search(
            repository_id, query, self._limit(limit)
        )

    def text_search(
        self, repository_id: str | None, query: str, limit: int | None = None
    ) -> list[SearchResult]:
        return self.retriever.text_search(
            repository_id, query, self._limit(limit)
        )

    def hybrid_search(
        self,
        repository_id: str | None,
        query: str,
        vector_weight: float | None = None,
        limit: int | None = None,
    ) -> list[SearchResult]:
        weight = self.config.retrieval.vector_weight if vector_weight is None else vector_weight
        return self.retriever.hybrid_search(
            repository_id, query, weight, self._limit(limit)
        )

    def find_similar_chunks(self, chunk_id: str, limit: int | None = None) -> list[SearchResult]:
        return self.retriever.find_similar(chunk_id, self._limit(limit))

    def _limit(self, limit: int | None) -> int:
        return self.config.retrieval.default_limit if limit is None else limit

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> ChatSession:
        """Return a session with its messages.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self, repository_id: str | None = None) -> list[ChatSession]:
        return self.store.list_sessions(repository_id)

    def process_message(
        self, session_id: str, message: str, repository_id: str | None = None
    ) -> ChatSession:
        return self.chat.process_message(session_id, message, repository_id)

    def process_message_streaming(
        self,
        session_id: str,
        message: str,
        cancel: CancelToken | None = None,
        repository_id: str | None = None,
    ) -> Generator[StreamChunk, None, None]:
        return self.chat.process_message_streaming(session_id, message, cancel, repository_id)


def _resolve(path: str, base: Path) -> str:
    if path == ":memory:" or Path(path).is_absolute():
        return path
    return str(base / path)
