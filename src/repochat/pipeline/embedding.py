"""Embedding pipeline: bounded priority job queue, worker pool, batched provider calls.

Job flow:
  queue_repository()  → EmbeddingJob on a bounded PriorityQueue (never blocks)
                        overflow: FALLBACK runs the job in the caller's thread,
                        REJECT raises QueueFullError
  job worker          → process_repository()
  process_repository  → unembedded chunks, grouped by (content_hash, language)
                        groups with an existing vector reuse it (skipped)
                        the rest are split into batches pulled by batch workers:
                        one provider call, one vector upsert, one store update each

A failed batch never aborts the run. The run ends ``failed`` when
failed / total exceeds ``max_failure_ratio``; failed chunks keep no vector,
so queueing the repository again only re-embeds them.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum

from repochat.db.models import CodeChunk, EmbeddingState
from repochat.db.store import DocumentStore
from repochat.errors import (
    InvalidArgumentError,
    QueueFullError,
    RepositoryNotFoundError,
    ServiceUnavailableError,
)
from repochat.pipeline.status import EmbeddingStatus, StatusTracker
from repochat.rag.llm_client import Embedder
from repochat.vector.store import VectorPoint, VectorStore, normalize_point_id

logger = logging.getLogger(__name__)

PRIORITY_HIGH = 1
PRIORITY_NORMAL = 2
PRIORITY_LOW = 3


class OverflowPolicy(str, Enum):
    FALLBACK = "fallback"
    REJECT = "reject"


class QueueOutcome(str, Enum):
    QUEUED = "queued"
    FALLBACK = "fallback"
    DUPLICATE = "duplicate"


@dataclass(order=True)
class EmbeddingJob:
    """Queue entry; ordered by priority, then enqueue time, then sequence."""

    priority: int
    enqueued_at: float
    seq: int
    repository_id: str = field(compare=False)


@dataclass
class QueueResult:
    repository_id: str
    outcome: QueueOutcome
    status: EmbeddingStatus


@dataclass
class ProcessingStats:
    """Store counts merged with the tracker's view of the latest run."""

    repository_id: str
    state: EmbeddingState
    progress: int
    total_chunks: int
    embedded_chunks: int
    pending_chunks: int
    processed_chunks: int = 0
    failed_chunks: int = 0
    skipped_chunks: int = 0
    estimated_time_remaining: float | None = None
    languages: dict[str, int] = field(default_factory=dict)


def chunk_payload(chunk: CodeChunk) -> dict:
    """Vector payload for *chunk*; ``chunkId`` keeps the original id."""
    return {
        "repositoryId": chunk.repository_id,
        "chunkId": chunk.id,
        "filePath": chunk.file_path,
        "fileName": chunk.file_name,
        "language": chunk.language,
        "startLine": chunk.start_line,
        "endLine": chunk.end_line,
        "functions": chunk.metadata.functions,
        "classes": chunk.metadata.classes,
        "imports": chunk.imports,
        "complexity": chunk.metadata.complexity,
        "contentHash": chunk.content_hash,
    }


# (content_hash, language) → chunks sharing it, representative first
_Group = list[CodeChunk]


class EmbeddingPipeline:
    """Turns stored chunks into vectors, one repository job at a time per worker.

    Args:
        store: Document store holding chunks.
        vectors: Vector index adapter.
        embedder: Rate-limited embedding client.
        collection: Qdrant collection name.
        dimensions: Vector size used when the collection is created.
        batch_size: Chunks per provider call (``embedding_batch_size``).
        workers: Job workers and per-run batch workers (``embedding_workers_num``).
        queue_capacity: Pending jobs before the overflow policy applies.
        overflow_policy: What ``queue_repository`` does on a full queue.
        max_failure_ratio: Tolerated share of failed chunks per run.
        tracker: Status store; a private one is created if omitted.
    """

    def __init__(
        self,
        store: DocumentStore,
        vectors: VectorStore,
        embedder: Embedder,
        *,
        collection: str,
        dimensions: int,
        batch_size: int = 50,
        workers: int = 3,
        queue_capacity: int = 100,
        overflow_policy: OverflowPolicy | str = OverflowPolicy.FALLBACK,
        max_failure_ratio: float = 0.5,
        tracker: StatusTracker | None = None,
    ) -> None:
        if batch_size < 1 or workers < 1 or queue_capacity < 1:
            raise InvalidArgumentError("batch_size, workers and queue_capacity must be >= 1")
        self._store = store
        self._vectors = vectors
        self._embedder = embedder
        self.collection = collection
        self._dimensions = dimensions
        self.batch_size = batch_size
        self.workers = workers
        self.overflow_policy = OverflowPolicy(overflow_policy)
        self.max_failure_ratio = max_failure_ratio
        self.tracker = tracker or StatusTracker()

        self._queue: queue.PriorityQueue[EmbeddingJob] = queue.PriorityQueue(maxsize=queue_capacity)
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._active: set[str] = set()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._collection_ready = False
        self._jobs_completed = 0
        self._jobs_failed = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the job workers (idempotent)."""
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._worker_loop, daemon=True, name=f"repochat-embed-{i}"
            )
            for i in range(self.workers)
        ]
        for t in self._threads:
            t.start()
        logger.info("Embedding pipeline started with %d workers", self.workers)

    def stop(self, timeout: float = 5.0) -> None:
        """Signal workers to exit and wait up to *timeout* seconds for each.

        Jobs still in the queue stay there; running jobs finish their run.
        """
        self._stop.set()
        for t in self._threads:
            if t.is_alive():
                t.join(timeout=timeout)
        self._threads = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def queue_repository(self, repository_id: str, priority: int = PRIORITY_NORMAL) -> QueueResult:
        """Enqueue an embedding job for *repository_id* without blocking.

        Args:
            repository_id: Repository to embed.
            priority: 1 (high), 2 (normal) or 3 (low).

        Returns:
            QueueResult: ``queued``; ``duplicate`` if a job for the repository
            is already queued or running; ``fallback`` if the queue was full
            and the job ran synchronously.

        Raises:
            InvalidArgumentError: If *priority* is not 1–3.
            RepositoryNotFoundError: If the repository does not exist.
            QueueFullError: If the queue is full and the policy is ``reject``.
        """
        if priority not in (PRIORITY_HIGH, PRIORITY_NORMAL, PRIORITY_LOW):
            raise InvalidArgumentError(f"priority must be 1, 2 or 3 (got {priority})")
        repo = self._store.get_repository(repository_id)
        if repo is None:
            raise RepositoryNotFoundError(repository_id)

        with self._lock:
            if repository_id in self._active:
                return QueueResult(repository_id, QueueOutcome.DUPLICATE, self.get_status(repository_id))
            self._active.add(repository_id)

        # Mark pending before the put: a worker may finish the job first.
        previous = self.tracker.get(repository_id)
        self._store.set_embedding_state(repository_id, EmbeddingState.PENDING)
        status = self.tracker.mark_pending(repository_id)

        job = EmbeddingJob(
            priority=priority,
            enqueued_at=time.monotonic(),
            seq=next(self._seq),
            repository_id=repository_id,
        )
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            if self.overflow_policy is OverflowPolicy.REJECT:
                self._store.set_embedding_state(
                    repository_id, repo.embedding_status, repo.embedding_error
                )
                if previous is None:
                    self.tracker.delete(repository_id)
                else:
                    self.tracker.set(previous)
                with self._lock:
                    self._active.discard(repository_id)
                raise QueueFullError(repository_id, self._queue.maxsize) from None
            logger.warning(
                "Embedding queue full (%d); processing %s synchronously",
                self._queue.maxsize,
                repository_id,
            )
            return QueueResult(repository_id, QueueOutcome.FALLBACK, self._execute(repository_id))

        logger.debug("Queued embedding job %s (priority %d)", repository_id, priority)
        return QueueResult(repository_id, QueueOutcome.QUEUED, status)

    def process_repository(self, repository_id: str) -> EmbeddingStatus:
        """Embed all unembedded chunks of *repository_id* in the caller's thread.

        If a job for the repository is already queued or running, nothing is
        started and the current status is returned.

        Raises:
            RepositoryNotFoundError: If the repository does not exist.
        """
        with self._lock:
            if repository_id in self._active:
                logger.info("Embedding for %s already in progress", repository_id)
                return self.get_status(repository_id)
            self._active.add(repository_id)
        return self._execute(repository_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self, repository_id: str) -> EmbeddingStatus:
        """Live status from the tracker, or one derived from the store.

        Raises:
            RepositoryNotFoundError: If the repository does not exist.
        """
        status = self.tracker.get(repository_id)
        if status is not None:
            return status
        repo = self._store.get_repository(repository_id)
        if repo is None:
            raise RepositoryNotFoundError(repository_id)
        total = self._store.count_chunks(repository_id)
        embedded = self._store.count_chunks(repository_id, embedded=True)
        progress = round(embedded / total * 100) if total else 0
        if repo.embedding_status is EmbeddingState.COMPLETED:
            progress = 100
        return EmbeddingStatus(
            repository_id=repository_id,
            state=repo.embedding_status,
            progress=progress,
            total_chunks=total,
            processed_chunks=embedded,
            error=repo.embedding_error,
            completed_at=repo.embedded_at,
        )

    def get_stats(self, repository_id: str) -> ProcessingStats:
        """Chunk counts for a repository plus the latest run's counters."""
        status = self.get_status(repository_id)
        total = self._store.count_chunks(repository_id)
        embedded = self._store.count_chunks(repository_id, embedded=True)
        live = self.tracker.get(repository_id)
        return ProcessingStats(
            repository_id=repository_id,
            state=status.state,
            progress=status.progress,
            total_chunks=total,
            embedded_chunks=embedded,
            pending_chunks=total - embedded,
            processed_chunks=live.processed_chunks if live else 0,
            failed_chunks=live.failed_chunks if live else 0,
            skipped_chunks=live.skipped_chunks if live else 0,
            estimated_time_remaining=status.estimated_time_remaining,
            languages=self._store.get_languages(repository_id),
        )

    def pipeline_stats(self) -> dict:
        with self._lock:
            active = len(self._active)
            completed, failed = self._jobs_completed, self._jobs_failed
        return {
            "queued": self._queue.qsize(),
            "active": active,
            "capacity": self._queue.maxsize,
            "workers": self.workers,
            "running": self.running,
            "jobs_completed": completed,
            "jobs_failed": failed,
        }

    # ------------------------------------------------------------------
    # Vector housekeeping
    # ------------------------------------------------------------------

    def delete_vectors(self, vector_ids: list[str]) -> None:
        """Remove points by id from the collection."""
        if vector_ids:
            self._vectors.delete(self.collection, vector_ids)

    def delete_repository_vectors(self, repository_id: str) -> None:
        """Remove every point of a repository and forget its vector assignments."""
        if self._vectors.exists(self.collection):
            self._vectors.delete_by_repository(self.collection, repository_id)
        self._store.clear_vector_ids(repository_id)
        self.tracker.delete(repository_id)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            try:
                job = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self._execute(job.repository_id)
            except Exception:
                logger.exception("Embedding job for %s crashed", job.repository_id)
            finally:
                self._queue.task_done()

    def _execute(self, repository_id: str) -> EmbeddingStatus:
        """Run a claimed job and release the claim."""
        try:
            status = self._run(repository_id)
        except Exception as exc:
            with self._lock:
                self._jobs_failed += 1
            if self._store.get_repository(repository_id) is not None:
                self._store.set_embedding_state(repository_id, EmbeddingState.FAILED, str(exc))
                self.tracker.finish_run(repository_id, EmbeddingState.FAILED, str(exc))
            raise
        finally:
            with self._lock:
                self._active.discard(repository_id)
        with self._lock:
            if status.state is EmbeddingState.COMPLETED:
                self._jobs_completed += 1
            else:
                self._jobs_failed += 1
        return status

    def _run(self, repository_id: str) -> EmbeddingStatus:
        if self._store.get_repository(repository_id) is None:
            raise RepositoryNotFoundError(repository_id)

        chunks = self._store.list_unembedded_chunks(repository_id)
        started = time.monotonic()
        self.tracker.start_run(repository_id, len(chunks))
        self._store.set_embedding_state(repository_id, EmbeddingState.PROCESSING)
        logger.info("Embedding %d chunks for %s", len(chunks), repository_id)

        if chunks:
            try:
                self._ensure_collection()
            except ServiceUnavailableError as exc:
                logger.error("Vector collection unavailable: %s", exc)
                return self._finish(repository_id, error=str(exc), force_failed=True)

            fresh = self._reuse_existing(repository_id, _group_chunks(chunks), started)
            batches = [fresh[i : i + self.batch_size] for i in range(0, len(fresh), self.batch_size)]
            self._run_batches(repository_id, batches, started)

        return self._finish(repository_id)

    def _finish(
        self, repository_id: str, error: str | None = None, force_failed: bool = False
    ) -> EmbeddingStatus:
        current = self.tracker.get(repository_id)
        total = current.total_chunks if current else 0
        failed = current.failed_chunks if current else 0
        if not force_failed and total and failed / total > self.max_failure_ratio:
            error = f"{failed} of {total} chunks failed to embed"
        state = EmbeddingState.FAILED if (force_failed or error) else EmbeddingState.COMPLETED
        status = self.tracker.finish_run(repository_id, state, error)
        self._store.set_embedding_state(repository_id, state, error)
        logger.info(
            "Embedding %s for %s: %d processed, %d failed, %d skipped",
            state.value,
            repository_id,
            status.processed_chunks,
            status.failed_chunks,
            status.skipped_chunks,
        )
        return status

    def _ensure_collection(self) -> None:
        if not self._collection_ready:
            self._vectors.ensure_collection(self.collection, self._dimensions)
            self._collection_ready = True

    # ------------------------------------------------------------------
    # Dedup by (content_hash, language)
    # ------------------------------------------------------------------

    def _reuse_existing(
        self, repository_id: str, groups: list[_Group], started: float
    ) -> list[_Group]:
        """Copy stored vectors onto groups that already have one; return the rest."""
        donors: dict[str, _Group] = {}
        fresh: list[_Group] = []
        for group in groups:
            rep = group[0]
            existing = self._store.find_embedded_duplicate(
                repository_id, rep.content_hash, rep.language
            )
            if existing is not None and existing.vector_id:
                donors.setdefault(existing.vector_id, []).extend(group)
            else:
                fresh.append(group)
        if not donors:
            return fresh

        try:
            found = {
                str(p.id): p.vector
                for p in self._vectors.retrieve(self.collection, list(donors), with_vectors=True)
                if p.vector is not None
            }
        except ServiceUnavailableError as exc:
            logger.warning("Could not load existing vectors, re-embedding: %s", exc)
            found = {}

        reused: list[tuple[CodeChunk, list[float]]] = []
        for vector_id, members in donors.items():
            vector = found.get(str(normalize_point_id(vector_id)))
            if vector is None:
                fresh.extend(_group_chunks(members))
            else:
                reused.extend((m, vector) for m in members)

        if reused:
            try:
                self._write_points(reused)
                self.tracker.record_batch(
                    repository_id,
                    processed=len(reused),
                    skipped=len(reused),
                    elapsed_seconds=time.monotonic() - started,
                )
            except ServiceUnavailableError as exc:
                logger.warning("Reusing vectors for %s failed: %s", repository_id, exc)
                self.tracker.record_batch(
                    repository_id, failed=len(reused), elapsed_seconds=time.monotonic() - started
                )
        return fresh

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def _run_batches(
        self, repository_id: str, batches: list[list[_Group]], started: float
    ) -> None:
        """Process *batches* with up to ``workers`` threads pulling from one queue."""
        if not batches:
            return
        work: queue.Queue[list[_Group]] = queue.Queue()
        for batch in batches:
            work.put(batch)

        def _batch_worker() -> None:
            while True:
                try:
                    batch = work.get_nowait()
                except queue.Empty:
                    return
                self._process_batch(repository_id, batch, started)

        threads = [
            threading.Thread(target=_batch_worker, daemon=True, name=f"repochat-batch-{i}")
            for i in range(min(self.workers, len(batches)))
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def _process_batch(self, repository_id: str, batch: list[_Group], started: float) -> None:
        """One provider call + one upsert + one store update. Failures count the whole batch."""
        members = sum(len(g) for g in batch)
        try:
            vectors = self._embedder.embed_batch([g[0].content for g in batch])
            if len(vectors) != len(batch):
                raise ServiceUnavailableError(
                    "embed", self._embedder.model, f"got {len(vectors)} vectors for {len(batch)} texts"
                )
            pairs = [(chunk, vector) for group, vector in zip(batch, vectors) for chunk in group]
            self._write_points(pairs)
        except Exception as exc:
            logger.warning(
                "Embedding batch of %d chunks failed for %s: %s", members, repository_id, exc
            )
            self.tracker.record_batch(
                repository_id, failed=members, elapsed_seconds=time.monotonic() - started
            )
            return
        self.tracker.record_batch(
            repository_id,
            processed=members,
            skipped=members - len(batch),
            elapsed_seconds=time.monotonic() - started,
        )

    def _write_points(self, pairs: list[tuple[CodeChunk, list[float]]]) -> None:
        points = [
            VectorPoint(id=chunk.id, vector=vector, payload=chunk_payload(chunk))
            for chunk, vector in pairs
        ]
        self._vectors.upsert(self.collection, points)
        self._store.mark_embedded(
            (chunk.id, str(normalize_point_id(chunk.id))) for chunk, _ in pairs
        )


def _group_chunks(chunks: list[CodeChunk]) -> list[_Group]:
    groups: OrderedDict[tuple[str, str], _Group] = OrderedDict()
    for chunk in chunks:
        groups.setdefault((chunk.content_hash, chunk.language), []).append(chunk)
    return list(groups.values())
