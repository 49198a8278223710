"""Cooperative cancellation for long-running and streaming calls."""

from __future__ import annotations

import threading
import time


class CancelToken:
    """Set by a caller to ask work in another thread to stop.

    A token is cancelled once ``cancel()`` was called or its deadline passed.
    Cancellation is not an error: code that observes it stops and returns
    what it has so far.

    Args:
        timeout: Seconds from now after which the token counts as cancelled.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*, waking early on cancel. Returns ``cancelled``."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self._event.wait(seconds)
        return self.cancelled
