"""Global ingestion cap.

Sliding one-minute window over accepted events. Producers never wait: an
event over the cap is refused immediately and the caller counts it as
dropped. The lock is held only for an amortised O(1) deque update.

Usage::

    limiter = IngestionLimiter()
    if not limiter.try_acquire(config.max_events_per_minute):
        # drop and count
        ...
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable

WINDOW_SECONDS = 60.0


class IngestionLimiter:
    """Sliding-window admission control shared by all producers."""

    def __init__(
        self,
        window_seconds: float = WINDOW_SECONDS,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._window = window_seconds
        self._clock = _clock or time.monotonic
        self._lock = threading.Lock()
        self._admitted: deque[float] = deque()

    def try_acquire(self, limit: int) -> bool:
        """Admit one event if fewer than *limit* were admitted in the window."""
        now = self._clock()
        with self._lock:
            self._prune(now)
            if len(self._admitted) >= limit:
                return False
            self._admitted.append(now)
        return True

    def release(self) -> None:
        """Hand back one admission, for an event that was admitted but not kept."""
        with self._lock:
            if self._admitted:
                self._admitted.pop()

    def in_window(self) -> int:
        now = self._clock()
        with self._lock:
            self._prune(now)
            return len(self._admitted)

    def _prune(self, now: float) -> None:
        """Remove entries older than the window from the left of the deque."""
        cutoff = now - self._window
        d = self._admitted
        while d and d[0] <= cutoff:
            d.popleft()
