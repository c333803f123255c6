"""Per-(rule, group) sliding windows with per-entry locking.

The registry lock only guards creation and removal of entries; counting
happens under the entry's own lock, so unrelated groups never contend.
"""

from __future__ import annotations

import bisect
import threading
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

WindowKey = tuple[str, str]


class GroupWindow:
    """Ordered (timestamp, event_id) pairs for one rule and group key.

    Also remembers when the last alert for this key was created, which is
    what cooldown is measured from. ``cooldown_loaded`` is False until that
    value has been recovered from the store.
    """

    __slots__ = ("lock", "entries", "last_alert_created_at", "cooldown_loaded", "last_seen")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: deque[tuple[datetime, str]] = deque()
        self.last_alert_created_at: datetime | None = None
        self.cooldown_loaded = False
        self.last_seen: datetime | None = None

    def add(self, timestamp: datetime, event_id: str, window: timedelta) -> int:
        """Record an event and evict entries older than the window.

        Caller must hold ``lock``. Returns the number of events in the window.
        """
        entry = (timestamp, event_id)
        if self.entries and timestamp < self.entries[-1][0]:
            # late arrival from a concurrent producer; keep the deque ordered
            items = list(self.entries)
            bisect.insort(items, entry)
            self.entries = deque(items)
        else:
            self.entries.append(entry)

        newest = self.entries[-1][0]
        self.last_seen = newest
        cutoff = newest - window
        while self.entries and self.entries[0][0] < cutoff:
            self.entries.popleft()
        return len(self.entries)

    def first_timestamp(self) -> datetime | None:
        return self.entries[0][0] if self.entries else None

    def event_ids(self) -> list[str]:
        return [eid for _, eid in self.entries]


class WindowRegistry:
    """Concurrent map of ``(rule_id, group_key)`` to ``GroupWindow``.

    Lock order is registry lock, then window lock. Entries are only removed
    while their window lock is held, so a caller inside ``locked()`` always
    works on the entry the registry currently holds.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: dict[WindowKey, GroupWindow] = {}

    def get(self, rule_id: str, group_key: str) -> GroupWindow:
        key = (rule_id, group_key)
        window = self._windows.get(key)
        if window is not None:
            return window
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = GroupWindow()
                self._windows[key] = window
            return window

    @contextmanager
    def locked(self, rule_id: str, group_key: str) -> Iterator[GroupWindow]:
        """Yield the live window for a key with its lock held.

        An entry removed between lookup and locking is looked up again.
        """
        key = (rule_id, group_key)
        while True:
            window = self.get(rule_id, group_key)
            window.lock.acquire()
            if self._windows.get(key) is window:
                break
            window.lock.release()
        try:
            yield window
        finally:
            window.lock.release()

    def peek(self, rule_id: str, group_key: str) -> GroupWindow | None:
        return self._windows.get((rule_id, group_key))

    def drop_rule(self, rule_id: str) -> int:
        with self._lock:
            doomed = [k for k in self._windows if k[0] == rule_id]
            for key in doomed:
                with self._windows[key].lock:
                    del self._windows[key]
            return len(doomed)

    def prune_idle(self, now: datetime, horizons: dict[str, timedelta]) -> int:
        """Remove windows idle for longer than their rule's horizon.

        *horizons* maps rule id to the span after which an idle window carries
        no information (the larger of window and cooldown). Windows of rules
        not in *horizons* are removed outright. A window whose lock is busy is
        in use and is left for the next pass.
        """
        removed = 0
        with self._lock:
            for key, window in list(self._windows.items()):
                if not window.lock.acquire(blocking=False):
                    continue
                try:
                    horizon = horizons.get(key[0])
                    if (
                        horizon is None
                        or window.last_seen is None
                        or now - window.last_seen > horizon
                    ):
                        del self._windows[key]
                        removed += 1
                finally:
                    window.lock.release()
        return removed

    def __len__(self) -> int:
        return len(self._windows)
