"""In-memory embedding status per repository, with scheduled TTL eviction.

The embedding pipeline is the only writer. Readers always receive copies, so
a snapshot never changes under them.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import dataclass, field

from repochat.db.models import EmbeddingState
from repochat.ids import now_utc_iso

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingStatus:
    """Progress of one repository's embedding run.

    Attributes:
        repository_id: Repository being embedded.
        state: pending → processing → completed | failed.
        progress: Percentage 0–100; never decreases within a run.
        total_chunks: Chunks selected for this run.
        processed_chunks: Chunks that now have a vector.
        failed_chunks: Chunks whose batch failed.
        skipped_chunks: Chunks that reused an existing vector.
        started_at: Wall-clock start (ISO, UTC).
        completed_at: Wall-clock end (ISO, UTC), set on a terminal state.
        error: Reason for ``failed``.
        estimated_time_remaining: Seconds, from the average time per handled chunk.
    """

    repository_id: str
    state: EmbeddingState = EmbeddingState.PENDING
    progress: int = 0
    total_chunks: int = 0
    processed_chunks: int = 0
    failed_chunks: int = 0
    skipped_chunks: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None
    estimated_time_remaining: float | None = None
    updated_monotonic: float = field(default_factory=time.monotonic, repr=False)

    @property
    def handled_chunks(self) -> int:
        return self.processed_chunks + self.failed_chunks

    def to_dict(self) -> dict:
        return {
            "repository_id": self.repository_id,
            "state": self.state.value,
            "progress": self.progress,
            "total_chunks": self.total_chunks,
            "processed_chunks": self.processed_chunks,
            "failed_chunks": self.failed_chunks,
            "skipped_chunks": self.skipped_chunks,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "estimated_time_remaining": self.estimated_time_remaining,
        }


class StatusTracker:
    """Lock-guarded ``{repository_id: EmbeddingStatus}`` with TTL eviction.

    Terminal entries (completed/failed) older than *ttl_seconds* are removed
    by a sweeper thread every *sweep_interval* seconds once ``start()`` is
    called; ``sweep()`` can also be called directly.

    Args:
        ttl_seconds: Age after which a terminal status is evicted.
        sweep_interval: Seconds between sweeps; defaults to min(ttl, 60).
    """

    def __init__(self, ttl_seconds: float = 3600.0, sweep_interval: float | None = None) -> None:
        self._ttl = ttl_seconds
        self._interval = sweep_interval if sweep_interval is not None else min(ttl_seconds, 60.0)
        self._lock = threading.Lock()
        self._entries: dict[str, EmbeddingStatus] = {}
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Keyed access
    # ------------------------------------------------------------------

    def get(self, repository_id: str) -> EmbeddingStatus | None:
        """Return a copy of the status, or None if untracked."""
        with self._lock:
            entry = self._entries.get(repository_id)
            return copy.copy(entry) if entry is not None else None

    def set(self, status: EmbeddingStatus) -> None:
        """Store a copy of *status*, replacing any previous entry."""
        status = copy.copy(status)
        status.updated_monotonic = time.monotonic()
        with self._lock:
            self._entries[status.repository_id] = status

    def delete(self, repository_id: str) -> None:
        with self._lock:
            self._entries.pop(repository_id, None)

    def snapshot(self) -> list[EmbeddingStatus]:
        with self._lock:
            return [copy.copy(e) for e in self._entries.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Run lifecycle (pipeline-only writers)
    # ------------------------------------------------------------------

    def mark_pending(self, repository_id: str) -> EmbeddingStatus:
        status = EmbeddingStatus(repository_id=repository_id)
        self.set(status)
        return copy.copy(status)

    def start_run(self, repository_id: str, total_chunks: int) -> EmbeddingStatus:
        status = EmbeddingStatus(
            repository_id=repository_id,
            state=EmbeddingState.PROCESSING,
            total_chunks=total_chunks,
            started_at=now_utc_iso(),
        )
        self.set(status)
        return copy.copy(status)

    def record_batch(
        self,
        repository_id: str,
        *,
        processed: int = 0,
        failed: int = 0,
        skipped: int = 0,
        elapsed_seconds: float | None = None,
    ) -> EmbeddingStatus:
        """Add one batch's counts and recompute progress and time remaining.

        Progress is ``round(processed / total * 100)`` and is never lowered.
        """
        with self._lock:
            entry = self._entries.get(repository_id)
            if entry is None:
                entry = EmbeddingStatus(repository_id=repository_id, state=EmbeddingState.PROCESSING)
                self._entries[repository_id] = entry
            entry.processed_chunks += processed
            entry.failed_chunks += failed
            entry.skipped_chunks += skipped
            if entry.total_chunks > 0:
                pct = round(entry.processed_chunks / entry.total_chunks * 100)
                entry.progress = max(entry.progress, min(100, pct))
            handled = entry.handled_chunks
            remaining = max(0, entry.total_chunks - handled)
            if elapsed_seconds is not None and handled > 0:
                entry.estimated_time_remaining = elapsed_seconds / handled * remaining
            entry.updated_monotonic = time.monotonic()
            return copy.copy(entry)

    def finish_run(
        self,
        repository_id: str,
        state: EmbeddingState,
        error: str | None = None,
    ) -> EmbeddingStatus:
        """Move the entry to a terminal *state*; ``completed`` forces progress to 100."""
        with self._lock:
            entry = self._entries.get(repository_id)
            if entry is None:
                entry = EmbeddingStatus(repository_id=repository_id)
                self._entries[repository_id] = entry
            entry.state = state
            entry.error = error
            entry.completed_at = now_utc_iso()
            entry.estimated_time_remaining = 0.0
            if state is EmbeddingState.COMPLETED:
                entry.progress = 100
            entry.updated_monotonic = time.monotonic()
            return copy.copy(entry)

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def sweep(self, now: float | None = None) -> int:
        """Evict expired terminal entries. Returns how many were removed."""
        now = time.monotonic() if now is None else now
        with self._lock:
            expired = [
                key
                for key, entry in self._entries.items()
                if entry.state.is_terminal and now - entry.updated_monotonic > self._ttl
            ]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Evicted %d expired embedding statuses", len(expired))
        return len(expired)

    def start(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, daemon=True, name="repochat-status-sweeper"
        )
        self._sweeper.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._sweeper is not None and self._sweeper.is_alive():
            self._sweeper.join(timeout=timeout)
        self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.sweep()
