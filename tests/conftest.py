"""Shared fixtures: controllable clocks and a recording channel sender."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest

from secwatch.errors import NotificationError

START = datetime(2025, 1, 15, 10, 0, tzinfo=UTC)


class MockClock:
    """A controllable wall clock for testing time-dependent behavior."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start

    def __call__(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> datetime:
        self._now += timedelta(**kwargs)
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when


class MonotonicClock:
    """A controllable monotonic clock (seconds as float)."""

    def __init__(self, start: float = 1000.0) -> None:
        self._now = start

    def __call__(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds


class RecordingSender:
    """Channel sender that records messages and can be told to fail."""

    def __init__(self, failures: int = 0) -> None:
        self.sent: list[tuple[str, str]] = []
        self.calls = 0
        self._failures = failures
        self._lock = threading.Lock()

    def send(self, message, channel) -> None:
        with self._lock:
            self.calls += 1
            if self._failures > 0:
                self._failures -= 1
                raise NotificationError("simulated outage")
            self.sent.append((message.alert.id, channel.id))


@pytest.fixture
def clock() -> MockClock:
    return MockClock()


@pytest.fixture
def mono() -> MonotonicClock:
    return MonotonicClock()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()
