"""Tests for StatusTracker progress accounting and eviction."""

from __future__ import annotations

import time

from repochat.db.models import EmbeddingState
from repochat.pipeline.status import EmbeddingStatus, StatusTracker


def test_get_untracked_returns_none():
    assert StatusTracker().get("nope") is None


def test_start_run_sets_processing():
    tracker = StatusTracker()
    status = tracker.start_run("r1", total_chunks=10)
    assert status.state is EmbeddingState.PROCESSING
    assert status.total_chunks == 10
    assert status.progress == 0
    assert status.started_at is not None


def test_progress_rounds_processed_share():
    tracker = StatusTracker()
    tracker.start_run("r1", total_chunks=3)
    status = tracker.record_batch("r1", processed=1)
    assert status.progress == 33
    status = tracker.record_batch("r1", processed=1)
    assert status.progress == 67


def test_failures_do_not_advance_progress():
    tracker = StatusTracker()
    tracker.start_run("r1", total_chunks=4)
    tracker.record_batch("r1", processed=2)
    status = tracker.record_batch("r1", failed=2)
    assert status.progress == 50
    assert status.failed_chunks == 2
    assert status.handled_chunks == 4


def test_progress_never_decreases():
    tracker = StatusTracker()
    tracker.start_run("r1", total_chunks=10)
    seen = []
    for processed, failed in [(3, 0), (0, 2), (1, 0), (0, 0), (6, 0)]:
        seen.append(tracker.record_batch("r1", processed=processed, failed=failed).progress)
    assert seen == sorted(seen)
    assert seen[-1] == 100


def test_estimated_time_remaining_from_average():
    tracker = StatusTracker()
    tracker.start_run("r1", total_chunks=10)
    status = tracker.record_batch("r1", processed=5, elapsed_seconds=10.0)
    assert status.estimated_time_remaining == 10.0


def test_finish_completed_forces_full_progress():
    tracker = StatusTracker()
    tracker.start_run("r1", total_chunks=10)
    tracker.record_batch("r1", processed=9, skipped=1)
    status = tracker.finish_run("r1", EmbeddingState.COMPLETED)
    assert status.progress == 100
    assert status.completed_at is not None
    assert status.estimated_time_remaining == 0.0


def test_finish_failed_keeps_progress_and_error():
    tracker = StatusTracker()
    tracker.start_run("r1", total_chunks=10)
    tracker.record_batch("r1", processed=2, failed=8)
    status = tracker.finish_run("r1", EmbeddingState.FAILED, "8 of 10 chunks failed")
    assert status.state is EmbeddingState.FAILED
    assert status.progress == 20
    assert status.error == "8 of 10 chunks failed"


def test_readers_get_copies():
    tracker = StatusTracker()
    tracker.start_run("r1", total_chunks=2)
    snapshot = tracker.get("r1")
    snapshot.progress = 99
    assert tracker.get("r1").progress == 0


def test_set_stores_copy():
    tracker = StatusTracker()
    status = EmbeddingStatus(repository_id="r1")
    tracker.set(status)
    status.progress = 50
    assert tracker.get("r1").progress == 0


def test_to_dict_uses_state_value():
    data = EmbeddingStatus(repository_id="r1").to_dict()
    assert data["state"] == "pending"
    assert data["repository_id"] == "r1"


# ------------------------------------------------------------------
# Eviction
# ------------------------------------------------------------------


def test_sweep_evicts_only_expired_terminal_entries():
    tracker = StatusTracker(ttl_seconds=60)
    tracker.start_run("running", total_chunks=5)
    tracker.start_run("done", total_chunks=5)
    tracker.finish_run("done", EmbeddingState.COMPLETED)

    assert tracker.sweep() == 0
    assert tracker.sweep(now=time.monotonic() + 120) == 1
    assert tracker.get("done") is None
    assert tracker.get("running") is not None


def test_sweeper_thread_evicts(monkeypatch):
    tracker = StatusTracker(ttl_seconds=0.01, sweep_interval=0.01)
    tracker.start_run("r1", total_chunks=1)
    tracker.finish_run("r1", EmbeddingState.FAILED, "boom")
    tracker.start()
    try:
        deadline = time.monotonic() + 2
        while len(tracker) and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        tracker.stop()
    assert tracker.get("r1") is None


def test_delete_and_snapshot():
    tracker = StatusTracker()
    tracker.mark_pending("a")
    tracker.mark_pending("b")
    tracker.delete("a")
    assert [s.repository_id for s in tracker.snapshot()] == ["b"]
