"""Tests for sliding-window rule evaluation, cooldown and alert lifecycle."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest

from secwatch.config import ConfigManager, EngineConfig
from secwatch.errors import ConflictError
from secwatch.evaluator.engine import RuleEvaluator
from secwatch.evaluator.windows import GroupWindow, WindowRegistry
from secwatch.models import (
    GLOBAL_GROUP,
    ActionType,
    AlertRule,
    AlertStatus,
    SecurityEvent,
    Severity,
)
from secwatch.store.memory import InMemoryRepository


class _Dispatcher:
    def __init__(self) -> None:
        self.dispatched = []

    def dispatch(self, alert, rule) -> None:
        self.dispatched.append((alert.id, alert.triggering_event_count))


class _FlakyRepository(InMemoryRepository):
    """Loses the first *failures* compare-and-swap races on alert updates."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    def update_alert(self, alert, expected_version):
        if self.failures > 0:
            self.failures -= 1
            raise ConflictError(alert.id, expected_version, expected_version + 1)
        return super().update_alert(alert, expected_version)


AUTH_BURST = AlertRule(
    id="auth-burst",
    name="Auth failure burst",
    event_type="auth_failure",
    group_by="related_user_address",
    window_minutes=5,
    threshold=5,
    cooldown_minutes=15,
    alert_severity=Severity.MEDIUM,
)


def _evaluator(*rules, repo=None, retries: int = 5):
    config = ConfigManager(EngineConfig(rules=tuple(rules), evaluator_max_retries=retries))
    repo = repo if repo is not None else InMemoryRepository()
    dispatcher = _Dispatcher()
    evaluator = RuleEvaluator(config, repo, dispatcher=dispatcher)
    return evaluator, repo, dispatcher, config


def _auth_failure(clock, user: str = "alice@example.com", **overrides) -> SecurityEvent:
    data = {
        "type": "auth_failure",
        "source": "auth-service",
        "severity": Severity.LOW,
        "related_user_address": user,
        "timestamp": clock(),
    }
    data.update(overrides)
    return SecurityEvent(**data)


def _feed(evaluator, repo, clock, minutes: list[float], **kw) -> list:
    """Submit one event per offset, advancing the clock to each offset."""
    base = clock()
    alerts = []
    for m in minutes:
        clock.set(base + timedelta(minutes=m))
        event = _auth_failure(clock, **kw)
        repo.add_event(event)
        alerts.extend(evaluator.on_event(event))
    return alerts


def _resolve(repo, alert_id: str) -> None:
    alert = repo.get_alert(alert_id)
    alert.status = AlertStatus.RESOLVED
    repo.update_alert(alert, alert.version)


# --- Thresholds ---


class TestThreshold:
    @pytest.mark.parametrize("threshold", [1, 2, 5])
    def test_alert_exactly_at_threshold(self, clock, threshold):
        rule = AlertRule(id="r", event_type="auth_failure", window_minutes=10, threshold=threshold)
        evaluator, repo, _, _ = _evaluator(rule)
        for i in range(threshold - 1):
            assert _feed(evaluator, repo, clock, [i * 0.1]) == []
        alerts = _feed(evaluator, repo, clock, [0])
        assert len(alerts) == 1
        assert alerts[0].triggering_event_count == threshold

    def test_events_outside_window_do_not_count(self, clock):
        rule = AlertRule(id="r", event_type="auth_failure", window_minutes=5, threshold=3)
        evaluator, repo, _, _ = _evaluator(rule)
        assert _feed(evaluator, repo, clock, [0, 4, 10, 14]) == []
        assert len(evaluator.windows.peek("r", GLOBAL_GROUP).event_ids()) == 2

    def test_window_edge_is_inclusive(self, clock):
        rule = AlertRule(id="r", event_type="auth_failure", window_minutes=5, threshold=2)
        evaluator, repo, _, _ = _evaluator(rule)
        assert len(_feed(evaluator, repo, clock, [0, 5])) == 1

    def test_non_matching_events_ignored(self, clock):
        rule = AlertRule(
            id="r", event_type="auth_failure", window_minutes=5, threshold=1,
            conditions=[{"field": "source", "operator": "eq", "value": "vpn"}],
        )
        evaluator, repo, _, _ = _evaluator(rule)
        assert _feed(evaluator, repo, clock, [0]) == []
        assert _feed(evaluator, repo, clock, [0], type="login_success", source="vpn") == []
        assert len(_feed(evaluator, repo, clock, [0], source="vpn")) == 1

    def test_disabled_rule_ignored(self, clock):
        rule = AlertRule(id="r", event_type="*", window_minutes=5, threshold=1, enabled=False)
        evaluator, repo, _, _ = _evaluator(rule)
        assert _feed(evaluator, repo, clock, [0]) == []


# --- The canonical auth-failure scenario ---


class TestAuthFailureScenario:
    def test_full_lifecycle(self, clock):
        evaluator, repo, dispatcher, _ = _evaluator(AUTH_BURST)
        start = clock()

        # five failures in four minutes open one medium alert
        alerts = _feed(evaluator, repo, clock, [0, 1, 2, 3, 4])
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.severity == Severity.MEDIUM
        assert alert.status == AlertStatus.OPEN
        assert alert.group_key == "alice@example.com"
        assert alert.triggering_event_count == 5
        assert alert.source == "auth-service"
        assert alert.created_at == start + timedelta(minutes=4)
        assert alert.first_triggered_at == start
        assert alert.actions[0].action == ActionType.TRIGGERED
        assert "Auth failure burst" in alert.title
        assert dispatcher.dispatched == [(alert.id, 5)]

        # a sixth failure bumps the same alert without re-notifying
        clock.set(start)
        updated = _feed(evaluator, repo, clock, [5])
        assert updated[0].id == alert.id
        assert updated[0].triggering_event_count == 6
        assert len(dispatcher.dispatched) == 1

        _resolve(repo, alert.id)

        # another burst inside the cooldown is suppressed
        clock.set(start)
        assert _feed(evaluator, repo, clock, [6, 7, 8, 9, 10]) == []
        assert evaluator.stats().alerts_suppressed == 5
        assert repo.find_active_alert("auth-burst", "alice@example.com") is None

        # once the cooldown has passed a new alert opens
        clock.set(start)
        fresh = _feed(evaluator, repo, clock, [19, 19.5, 20, 20.5, 21])
        assert len(fresh) == 1
        assert fresh[0].id != alert.id
        assert fresh[0].triggering_event_count == 5

        stats = evaluator.stats()
        assert stats.alerts_created == 2
        assert stats.alerts_updated == 1

    def test_groups_are_independent(self, clock):
        evaluator, repo, _, _ = _evaluator(AUTH_BURST)
        base = clock()
        _feed(evaluator, repo, clock, [0, 1, 2, 3], user="alice@example.com")
        clock.set(base)
        assert _feed(evaluator, repo, clock, [0, 1, 2, 3], user="bob@example.com") == []
        clock.set(base)
        alerts = _feed(evaluator, repo, clock, [4], user="alice@example.com")
        assert [a.group_key for a in alerts] == ["alice@example.com"]

    def test_acknowledged_alert_still_accumulates(self, clock):
        evaluator, repo, _, _ = _evaluator(AUTH_BURST)
        base = clock()
        alert = _feed(evaluator, repo, clock, [0, 1, 2, 3, 4])[0]
        stored = repo.get_alert(alert.id)
        stored.status = AlertStatus.ACKNOWLEDGED
        repo.update_alert(stored, stored.version)

        clock.set(base)
        bumped = _feed(evaluator, repo, clock, [4.5])
        assert bumped[0].id == alert.id
        assert bumped[0].status == AlertStatus.ACKNOWLEDGED


# --- Notification on material updates ---


class TestMaterialUpdates:
    def test_renotify_every_threshold_multiple(self, clock):
        rule = AlertRule(id="r", event_type="auth_failure", window_minutes=60, threshold=2)
        evaluator, repo, dispatcher, _ = _evaluator(rule)
        _feed(evaluator, repo, clock, [0, 1, 2, 3, 4])
        assert [count for _, count in dispatcher.dispatched] == [2, 4]

    def test_tracked_ids_are_bounded(self, clock):
        rule = AlertRule(id="r", event_type="auth_failure", window_minutes=600, threshold=1)
        evaluator, repo, _, _ = _evaluator(rule)
        alerts = _feed(evaluator, repo, clock, [i * 0.1 for i in range(80)])
        assert alerts[-1].triggering_event_count == 80
        assert len(alerts[-1].triggering_event_ids) == 50


# --- Cooldown and restarts ---


class TestCooldown:
    def test_zero_cooldown_reopens_immediately(self, clock):
        rule = AUTH_BURST.model_copy(update={"cooldown_minutes": 0, "threshold": 1})
        evaluator, repo, _, _ = _evaluator(rule)
        first = _feed(evaluator, repo, clock, [0])[0]
        _resolve(repo, first.id)
        second = _feed(evaluator, repo, clock, [0])
        assert second[0].id != first.id

    def test_cooldown_recovered_from_store(self, clock):
        repo = InMemoryRepository()
        rule = AUTH_BURST.model_copy(update={"threshold": 1})
        first, repo, _, _ = _evaluator(rule, repo=repo)
        opened = _feed(first, repo, clock, [0])[0]
        _resolve(repo, opened.id)

        # a new evaluator has empty windows but still honours the cooldown
        restarted, _, _, _ = _evaluator(rule, repo=repo)
        assert _feed(restarted, repo, clock, [5]) == []
        assert restarted.stats().alerts_suppressed == 1
        assert len(_feed(restarted, repo, clock, [11])) == 1


# --- Concurrency and conflicts ---


class TestConflicts:
    def test_lost_race_is_retried(self, clock):
        repo = _FlakyRepository(failures=0)
        rule = AlertRule(id="r", event_type="auth_failure", window_minutes=60, threshold=1)
        evaluator, _, _, _ = _evaluator(rule, repo=repo)
        _feed(evaluator, repo, clock, [0])
        repo.failures = 2
        bumped = _feed(evaluator, repo, clock, [0])
        assert bumped[0].triggering_event_count == 2
        assert evaluator.stats().conflicts_retried == 2

    def test_gives_up_after_max_retries(self, clock):
        repo = _FlakyRepository(failures=0)
        rule = AlertRule(id="r", event_type="auth_failure", window_minutes=60, threshold=1)
        evaluator, _, _, _ = _evaluator(rule, repo=repo, retries=3)
        opened = _feed(evaluator, repo, clock, [0])[0]
        repo.failures = 100
        assert _feed(evaluator, repo, clock, [0]) == []
        assert evaluator.stats().conflicts_retried == 3
        assert repo.get_alert(opened.id).triggering_event_count == 1

    def test_concurrent_events_count_every_event(self, clock):
        rule = AlertRule(id="r", event_type="auth_failure", window_minutes=60, threshold=1)
        evaluator, repo, _, _ = _evaluator(rule)

        def worker() -> None:
            for _ in range(25):
                evaluator.on_event(_auth_failure(clock))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        active = repo.find_active_alert("r", GLOBAL_GROUP)
        assert active.triggering_event_count == 100
        assert repo.list_alerts().total == 1


# --- Windows and configuration changes ---


class TestWindows:
    def test_late_arrival_kept_in_order(self, clock):
        window = GroupWindow()
        now = clock()
        window.add(now, "b", timedelta(minutes=5))
        window.add(now - timedelta(minutes=1), "a", timedelta(minutes=5))
        assert window.event_ids() == ["a", "b"]
        assert window.first_timestamp() == now - timedelta(minutes=1)

    def test_registry_prunes_idle(self, clock):
        registry = WindowRegistry()
        registry.get("r", "g").add(clock(), "e", timedelta(minutes=5))
        registry.get("gone", "g").add(clock(), "e", timedelta(minutes=5))
        horizons = {"r": timedelta(minutes=5)}
        assert registry.prune_idle(clock() + timedelta(minutes=1), horizons) == 1
        assert registry.prune_idle(clock() + timedelta(minutes=6), horizons) == 1
        assert len(registry) == 0

    def test_window_change_drops_state(self, clock):
        rule = AlertRule(id="r", event_type="auth_failure", window_minutes=10, threshold=3)
        evaluator, repo, _, config = _evaluator(rule)
        _feed(evaluator, repo, clock, [0, 1])
        config.upsert_rule(rule.model_copy(update={"window_minutes": 20}))
        assert evaluator.windows.peek("r", GLOBAL_GROUP) is None
        assert _feed(evaluator, repo, clock, [2]) == []

    def test_threshold_change_keeps_state(self, clock):
        rule = AlertRule(id="r", event_type="auth_failure", window_minutes=10, threshold=3)
        evaluator, repo, _, config = _evaluator(rule)
        _feed(evaluator, repo, clock, [0, 1])
        config.upsert_rule(rule.model_copy(update={"threshold": 2}))
        assert evaluator.windows.peek("r", GLOBAL_GROUP) is not None
        assert len(_feed(evaluator, repo, clock, [2])) == 1

    def test_deleted_rule_drops_windows(self, clock):
        rule = AlertRule(id="r", event_type="auth_failure", window_minutes=10, threshold=3)
        evaluator, repo, _, config = _evaluator(rule)
        _feed(evaluator, repo, clock, [0])
        config.delete_rule("r")
        assert len(evaluator.windows) == 0

    def test_prune_idle_uses_cooldown_horizon(self, clock):
        evaluator, repo, _, _ = _evaluator(AUTH_BURST)
        _feed(evaluator, repo, clock, [0])
        assert evaluator.prune_idle(clock() + timedelta(minutes=10)) == 0
        assert evaluator.prune_idle(clock() + timedelta(minutes=16)) == 1


class _PruningRegistry(WindowRegistry):
    """Removes every window right after the first lookup hands one out."""

    def __init__(self) -> None:
        super().__init__()
        self.armed = True
        self.stale = None

    def get(self, rule_id, group_key):
        window = super().get(rule_id, group_key)
        if self.armed:
            self.armed = False
            self.stale = window
            self.prune_idle(datetime.now(UTC), {})
        return window


class TestWindowRemovalRaces:
    def test_locked_relooks_up_pruned_window(self):
        registry = _PruningRegistry()
        with registry.locked("r", "g") as window:
            assert window is not registry.stale
            assert registry.peek("r", "g") is window

    def test_event_counted_in_live_window_after_prune(self, clock):
        registry = _PruningRegistry()
        config = ConfigManager(EngineConfig(rules=(AUTH_BURST,)))
        repo = InMemoryRepository()
        evaluator = RuleEvaluator(config, repo, windows=registry)

        alerts = _feed(evaluator, repo, clock, [0, 1, 2, 3, 4])

        assert len(alerts) == 1
        assert alerts[0].triggering_event_count == 5

    def test_prune_leaves_window_in_use(self, clock):
        registry = WindowRegistry()
        with registry.locked("r", "g") as window:
            assert registry.prune_idle(clock(), {}) == 0
        assert registry.peek("r", "g") is window
        assert registry.prune_idle(clock(), {}) == 1

    def test_drop_rule_waits_for_window_in_use(self):
        registry = WindowRegistry()
        dropped = []
        with registry.locked("r", "g"):
            dropper = threading.Thread(target=lambda: dropped.append(registry.drop_rule("r")))
            dropper.start()
            dropper.join(0.2)
            assert dropped == []
        dropper.join(5)
        assert dropped == [1]
        assert registry.peek("r", "g") is None
