"""Tests for the ingestion limiter and the event intake."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from secwatch.config import ConfigManager, EngineConfig
from secwatch.errors import RepositoryError, ValidationError
from secwatch.intake.intake import EventIntake
from secwatch.intake.limiter import IngestionLimiter
from secwatch.models import EventSubmission, Severity
from secwatch.store.memory import InMemoryRepository


class _Evaluator:
    def __init__(self) -> None:
        self.seen = []

    def on_event(self, event) -> None:
        self.seen.append(event)


def _payload(**overrides) -> dict:
    data = {
        "type": "auth_failure",
        "source": "auth-service",
        "severity": "medium",
        "related_user_address": "alice@example.com",
        "timestamp": "2024-06-01T00:00:00Z",
    }
    data.update(overrides)
    return data


def _intake(clock, mono, cap: int = 1000, evaluator=None):
    config = ConfigManager(EngineConfig(max_events_per_minute=cap))
    repo = InMemoryRepository()
    intake = EventIntake(
        config, repo, evaluator=evaluator,
        limiter=IngestionLimiter(_clock=mono), _clock=clock,
    )
    return intake, repo


# --- Limiter ---


class TestIngestionLimiter:
    def test_admits_up_to_limit(self, mono):
        limiter = IngestionLimiter(_clock=mono)
        assert all(limiter.try_acquire(3) for _ in range(3))
        assert not limiter.try_acquire(3)
        assert limiter.in_window() == 3

    def test_window_slides(self, mono):
        limiter = IngestionLimiter(_clock=mono)
        limiter.try_acquire(2)
        mono.advance(30)
        limiter.try_acquire(2)
        assert not limiter.try_acquire(2)
        mono.advance(30)
        assert limiter.try_acquire(2)
        assert limiter.in_window() == 2

    def test_limit_change_takes_effect_immediately(self, mono):
        limiter = IngestionLimiter(_clock=mono)
        for _ in range(5):
            limiter.try_acquire(10)
        assert not limiter.try_acquire(5)
        assert limiter.try_acquire(6)

    def test_concurrent_never_exceeds_limit(self, mono):
        limiter = IngestionLimiter(_clock=mono)
        admitted = []
        lock = threading.Lock()

        def worker() -> None:
            for _ in range(50):
                if limiter.try_acquire(100):
                    with lock:
                        admitted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(admitted) == 100


# --- Intake ---


class TestEventIntake:
    def test_accepts_and_stamps(self, clock, mono):
        intake, repo = _intake(clock, mono)
        event = intake.submit(_payload())
        assert event is not None
        assert event.timestamp == clock()
        assert event.producer_timestamp.year == 2024
        assert repo.get_event(event.id) == event

    def test_accepts_submission_model(self, clock, mono):
        intake, _ = _intake(clock, mono)
        sub = EventSubmission(type="x", source="y", timestamp=clock() - timedelta(days=1))
        event = intake.submit(sub)
        assert event.severity == Severity.INFO

    def test_forwards_to_evaluator(self, clock, mono):
        evaluator = _Evaluator()
        intake, _ = _intake(clock, mono, evaluator=evaluator)
        event = intake.submit(_payload())
        assert evaluator.seen == [event]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"type": ""},
            {"source": ""},
            {"severity": "urgent"},
            {"timestamp": "not-a-date"},
        ],
    )
    def test_rejects_malformed(self, clock, mono, overrides):
        evaluator = _Evaluator()
        intake, repo = _intake(clock, mono, evaluator=evaluator)
        with pytest.raises(ValidationError):
            intake.submit(_payload(**overrides))
        assert repo.list_events().total == 0
        assert evaluator.seen == []
        assert intake.stats().rejected_events == 1

    def test_missing_timestamp_rejected(self, clock, mono):
        intake, _ = _intake(clock, mono)
        payload = _payload()
        del payload["timestamp"]
        with pytest.raises(ValidationError, match="timestamp"):
            intake.submit(payload)

    def test_cap_drops_and_counts(self, clock, mono):
        evaluator = _Evaluator()
        intake, repo = _intake(clock, mono, cap=3, evaluator=evaluator)
        results = [intake.submit(_payload()) for _ in range(5)]
        assert sum(r is not None for r in results) == 3
        assert results[3] is None and results[4] is None
        assert repo.list_events().total == 3
        assert len(evaluator.seen) == 3

        stats = intake.stats()
        assert stats.accepted_events == 3
        assert stats.dropped_events == 2
        assert stats.events_in_window == 3

    def test_cap_recovers_after_window(self, clock, mono):
        intake, _ = _intake(clock, mono, cap=1)
        assert intake.submit(_payload()) is not None
        assert intake.submit(_payload()) is None
        mono.advance(61)
        assert intake.submit(_payload()) is not None

    def test_invalid_input_does_not_use_capacity(self, clock, mono):
        intake, _ = _intake(clock, mono, cap=1)
        with pytest.raises(ValidationError):
            intake.submit(_payload(type=""))
        assert intake.submit(_payload()) is not None

    def test_failed_write_does_not_use_capacity(self, clock, mono):
        class _BrokenOnce(InMemoryRepository):
            def __init__(self) -> None:
                super().__init__()
                self.broken = True

            def add_event(self, event):
                if self.broken:
                    self.broken = False
                    raise RepositoryError("disk I/O error")
                return super().add_event(event)

        evaluator = _Evaluator()
        repo = _BrokenOnce()
        intake = EventIntake(
            ConfigManager(EngineConfig(max_events_per_minute=1)), repo,
            evaluator=evaluator, limiter=IngestionLimiter(_clock=mono), _clock=clock,
        )
        with pytest.raises(RepositoryError):
            intake.submit(_payload())
        assert evaluator.seen == []
        assert intake.stats().events_in_window == 0

        assert intake.submit(_payload()) is not None
        assert repo.list_events().total == 1


class TestLimiterRelease:
    def test_release_hands_back_one_slot(self, mono):
        limiter = IngestionLimiter(_clock=mono)
        assert limiter.try_acquire(1)
        assert not limiter.try_acquire(1)
        limiter.release()
        assert limiter.try_acquire(1)

    def test_release_on_empty_window_is_noop(self, mono):
        limiter = IngestionLimiter(_clock=mono)
        limiter.release()
        assert limiter.in_window() == 0
