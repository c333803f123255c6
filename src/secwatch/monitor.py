"""SecurityMonitor: one object that wires the whole engine together.

Builds the store, intake, evaluator, dispatcher, auto-resolver, retention
sweeper and dashboard aggregator from a single ``EngineConfig`` and exposes
the operations the API and CLI need. Background sweeps run only between
``start()`` and ``stop()``; everything else works without them.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from secwatch.config import ConfigManager, EngineConfig
from secwatch.dashboard.aggregator import DEFAULT_TOP_N, DashboardAggregator
from secwatch.dashboard.models import DashboardSummary
from secwatch.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from secwatch.evaluator.engine import EvaluatorStats, RuleEvaluator
from secwatch.intake.intake import EventIntake, IntakeStats
from secwatch.intake.limiter import IngestionLimiter
from secwatch.models import (
    ActionType,
    Alert,
    AlertAction,
    AlertRule,
    AlertStatus,
    AutoResolveRule,
    EventSubmission,
    NotificationChannel,
    SecurityEvent,
    utcnow,
)
from secwatch.notify.channels import ChannelSender
from secwatch.notify.dispatcher import NotificationDispatcher
from secwatch.store.memory import InMemoryRepository
from secwatch.store.repository import (
    DEFAULT_PAGE_SIZE,
    AlertFilter,
    EventFilter,
    Page,
    Repository,
)
from secwatch.store.sqlite import SqliteRepository
from secwatch.tasks.periodic import PeriodicTask
from secwatch.tasks.resolver import AutoResolver
from secwatch.tasks.retention import RetentionSweeper

logger = logging.getLogger(__name__)

MANUAL_ACTIONS = (ActionType.ACKNOWLEDGE, ActionType.RESOLVE, ActionType.COMMENT)


class MonitorStats(BaseModel):
    running: bool
    store: str
    intake: IntakeStats
    evaluator: EvaluatorStats
    pending_deliveries: int
    auto_resolved: int
    rules: int
    channels: int
    auto_resolve_rules: int


def build_repository(config: EngineConfig) -> Repository:
    if config.store == "sqlite":
        if config.db_path is None:
            raise ValidationError("db_path is required when store is 'sqlite'")
        return SqliteRepository(config.db_path)
    return InMemoryRepository()


def apply_action(
    alert: Alert,
    action: ActionType,
    actor: str,
    notes: str | None,
    now: datetime,
) -> Alert:
    """Return a copy of *alert* with a manual *action* applied.

    Raises ``InvalidTransitionError`` for anything outside
    open -> acknowledged -> resolved. Comments are always allowed.
    """
    if action not in MANUAL_ACTIONS:
        raise InvalidTransitionError(f"'{action}' is not a manual action")
    if action != ActionType.COMMENT:
        if alert.status == AlertStatus.RESOLVED:
            raise InvalidTransitionError(f"Alert {alert.id} is already resolved")
        if action == ActionType.ACKNOWLEDGE and alert.status == AlertStatus.ACKNOWLEDGED:
            raise InvalidTransitionError(f"Alert {alert.id} is already acknowledged")
    elif not notes:
        raise ValidationError("A comment needs notes")

    updated = alert.model_copy(deep=True)
    if action == ActionType.ACKNOWLEDGE:
        updated.status = AlertStatus.ACKNOWLEDGED
        updated.acknowledged_at = now
    elif action == ActionType.RESOLVE:
        updated.status = AlertStatus.RESOLVED
        updated.resolved_at = now
        updated.resolution_notes = notes or f"Resolved by {actor}"
    updated.actions.append(
        AlertAction(action=action, actor=actor, notes=notes or "", timestamp=now),
    )
    return updated


class SecurityMonitor:
    """Facade over the monitoring engine."""

    def __init__(
        self,
        config: EngineConfig | ConfigManager | None = None,
        repository: Repository | None = None,
        senders: dict[Any, ChannelSender] | None = None,
        limiter: IngestionLimiter | None = None,
        _clock: Callable[[], datetime] | None = None,
        _sleep: Callable[[float], object] | None = None,
    ) -> None:
        if isinstance(config, ConfigManager):
            self._config = config
        else:
            self._config = ConfigManager()
            self._config.apply(config or EngineConfig())
        self._clock = _clock or utcnow
        snapshot = self._config.snapshot

        self._repo = repository if repository is not None else build_repository(snapshot)
        self._seed_config_from_store()
        self._mirror_to_store(self._config.snapshot)
        self._config.subscribe(self._mirror_to_store)

        self._dispatcher = NotificationDispatcher(
            self._config, senders=senders, _sleep=_sleep, _clock=self._clock,
        )
        self._evaluator = RuleEvaluator(
            self._config, self._repo, dispatcher=self._dispatcher, _clock=self._clock,
        )
        self._intake = EventIntake(
            self._config, self._repo, evaluator=self._evaluator,
            limiter=limiter, _clock=self._clock,
        )
        self._resolver = AutoResolver(
            self._config, self._repo, windows=self._evaluator.windows, _clock=self._clock,
        )
        self._retention = RetentionSweeper(
            self._config, self._repo, evaluator=self._evaluator, _clock=self._clock,
        )
        self._aggregator = DashboardAggregator(self._repo, _clock=self._clock)

        self._tasks = [
            PeriodicTask(
                "auto-resolve",
                lambda: self._config.snapshot.auto_resolve_interval_seconds,
                lambda stop: self._resolver.sweep(cancel=stop),
            ),
            PeriodicTask(
                "retention",
                lambda: self._config.snapshot.retention_interval_seconds,
                lambda stop: self._retention.sweep(cancel=stop),
            ),
        ]
        self._lifecycle_lock = threading.Lock()
        self._running = False
        self._closed = False

    @classmethod
    def from_file(cls, path: str | Path | None = None, **kwargs: Any) -> SecurityMonitor:
        """Build a monitor from a YAML config file (or auto-discovery)."""
        manager = ConfigManager()
        manager.load(path)
        return cls(manager, **kwargs)

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def config(self) -> ConfigManager:
        return self._config

    @property
    def repository(self) -> Repository:
        return self._repo

    @property
    def intake(self) -> EventIntake:
        return self._intake

    @property
    def evaluator(self) -> RuleEvaluator:
        return self._evaluator

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    @property
    def resolver(self) -> AutoResolver:
        return self._resolver

    @property
    def retention(self) -> RetentionSweeper:
        return self._retention

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def submit_event(self, payload: EventSubmission | dict[str, Any]) -> SecurityEvent | None:
        """Submit one event. ``None`` means it was dropped by the ingestion cap."""
        return self._intake.submit(payload)

    def get_event(self, event_id: str) -> SecurityEvent:
        event = self._repo.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event '{event_id}' not found")
        return event

    def list_events(
        self,
        flt: EventFilter | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        return self._repo.list_events(flt, page, limit)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def get_alert(self, alert_id: str) -> Alert:
        alert = self._repo.get_alert(alert_id)
        if alert is None:
            raise NotFoundError(f"Alert '{alert_id}' not found")
        return alert

    def list_alerts(
        self,
        flt: AlertFilter | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        return self._repo.list_alerts(flt, page, limit)

    def acknowledge_alert(
        self, alert_id: str, actor: str = "system", notes: str | None = None,
    ) -> Alert:
        return self.add_alert_action(alert_id, ActionType.ACKNOWLEDGE, actor, notes)

    def resolve_alert(
        self, alert_id: str, actor: str = "system", notes: str | None = None,
    ) -> Alert:
        return self.add_alert_action(alert_id, ActionType.RESOLVE, actor, notes)

    def update_alert_status(
        self,
        alert_id: str,
        status: AlertStatus,
        actor: str = "system",
        notes: str | None = None,
    ) -> Alert:
        """Move an alert to *status* (acknowledged or resolved)."""
        if status == AlertStatus.ACKNOWLEDGED:
            return self.acknowledge_alert(alert_id, actor, notes)
        if status == AlertStatus.RESOLVED:
            return self.resolve_alert(alert_id, actor, notes)
        raise InvalidTransitionError(f"Cannot move an alert back to '{status}'")

    def add_alert_action(
        self,
        alert_id: str,
        action: ActionType | str,
        actor: str = "system",
        notes: str | None = None,
    ) -> Alert:
        """Apply a manual action with compare-and-swap, retrying lost races."""
        try:
            action = ActionType(action)
        except ValueError as exc:
            raise ValidationError(f"Unknown action '{action}'") from exc

        retries = self._config.snapshot.evaluator_max_retries
        seen_version = -1
        for _attempt in range(retries):
            current = self.get_alert(alert_id)
            seen_version = current.version
            updated = apply_action(current, action, actor, notes, self._clock())
            try:
                stored = self._repo.update_alert(updated, current.version)
            except ConflictError:
                logger.debug("Alert %s changed during %s; retrying", alert_id, action)
                continue
            logger.info("Alert %s: %s by %s", alert_id, action, actor)
            return stored
        raise ConflictError(alert_id, seen_version, None)

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def get_summary(
        self,
        start: datetime,
        end: datetime,
        bucket_minutes: int | None = None,
        top_n: int = DEFAULT_TOP_N,
    ) -> DashboardSummary:
        return self._aggregator.get_summary(start, end, bucket_minutes, top_n)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> EngineConfig:
        return self._config.snapshot

    def replace_config(self, config: EngineConfig | dict[str, Any]) -> EngineConfig:
        """Swap in a whole new configuration. Storage settings are kept."""
        if isinstance(config, dict):
            return self._config.apply_dict(
                {**config, "store": self._config.snapshot.store,
                 "db_path": self._config.snapshot.db_path},
            )
        return self._config.apply(
            config.model_copy(update={
                "store": self._config.snapshot.store,
                "db_path": self._config.snapshot.db_path,
            }),
        )

    def list_rules(self) -> list[AlertRule]:
        return list(self._config.snapshot.rules)

    def get_rule(self, rule_id: str) -> AlertRule:
        rule = self._config.snapshot.rule(rule_id)
        if rule is None:
            raise NotFoundError(f"Rule '{rule_id}' not found")
        return rule

    def put_rule(self, rule: AlertRule) -> AlertRule:
        self._config.upsert_rule(rule)
        return rule

    def delete_rule(self, rule_id: str) -> None:
        self._config.delete_rule(rule_id)

    def list_channels(self) -> list[NotificationChannel]:
        return list(self._config.snapshot.channels)

    def get_channel(self, channel_id: str) -> NotificationChannel:
        channel = self._config.snapshot.channel(channel_id)
        if channel is None:
            raise NotFoundError(f"Channel '{channel_id}' not found")
        return channel

    def put_channel(self, channel: NotificationChannel) -> NotificationChannel:
        self._config.upsert_channel(channel)
        return channel

    def delete_channel(self, channel_id: str) -> None:
        self._config.delete_channel(channel_id)

    def list_auto_resolve_rules(self) -> list[AutoResolveRule]:
        return list(self._config.snapshot.auto_resolve_rules)

    def get_auto_resolve_rule(self, rule_id: str) -> AutoResolveRule:
        rule = self._config.snapshot.auto_resolve_rule(rule_id)
        if rule is None:
            raise NotFoundError(f"Auto-resolve rule '{rule_id}' not found")
        return rule

    def put_auto_resolve_rule(self, rule: AutoResolveRule) -> AutoResolveRule:
        self._config.upsert_auto_resolve_rule(rule)
        return rule

    def delete_auto_resolve_rule(self, rule_id: str) -> None:
        self._config.delete_auto_resolve_rule(rule_id)

    def _seed_config_from_store(self) -> None:
        snapshot = self._config.snapshot
        if snapshot.rules or snapshot.channels or snapshot.auto_resolve_rules:
            return
        stored = {
            "rules": tuple(self._repo.list_rules()),
            "channels": tuple(self._repo.list_channels()),
            "auto_resolve_rules": tuple(self._repo.list_auto_resolve_rules()),
        }
        if any(stored.values()):
            logger.info(
                "Restoring %d rules, %d channels and %d auto-resolve rules from the store",
                len(stored["rules"]), len(stored["channels"]),
                len(stored["auto_resolve_rules"]),
            )
            self._config.apply(snapshot.model_copy(update=stored))

    def _mirror_to_store(self, config: EngineConfig) -> None:
        """Keep the store's copy of rules, channels and auto-resolve rules in step."""
        sections = (
            (config.rules, self._repo.list_rules, self._repo.put_rule, self._repo.delete_rule),
            (
                config.channels, self._repo.list_channels,
                self._repo.put_channel, self._repo.delete_channel,
            ),
            (
                config.auto_resolve_rules, self._repo.list_auto_resolve_rules,
                self._repo.put_auto_resolve_rule, self._repo.delete_auto_resolve_rule,
            ),
        )
        for items, list_fn, put_fn, delete_fn in sections:
            wanted = {item.id for item in items}
            for existing in list_fn():
                if existing.id not in wanted:
                    delete_fn(existing.id)
            for item in items:
                put_fn(item)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._running:
                return
            if self._closed:
                raise RuntimeError("Monitor has been stopped")
            for task in self._tasks:
                task.start()
            self._running = True
        logger.info("Security monitor started (%s store)", self._config.snapshot.store)

    def stop(self, grace_seconds: float | None = None) -> None:
        """Cancel sweeps, drain notifications within the grace period, close the store."""
        with self._lifecycle_lock:
            if self._closed:
                return
            self._closed = True
            self._running = False
        grace = (
            grace_seconds if grace_seconds is not None
            else self._config.snapshot.shutdown_grace_seconds
        )
        for task in self._tasks:
            task.stop(timeout=grace)
        self._dispatcher.shutdown(grace)
        self._repo.close()
        logger.info("Security monitor stopped")

    def __enter__(self) -> SecurityMonitor:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def stats(self) -> MonitorStats:
        snapshot = self._config.snapshot
        return MonitorStats(
            running=self._running,
            store=snapshot.store,
            intake=self._intake.stats(),
            evaluator=self._evaluator.stats(),
            pending_deliveries=self._dispatcher.pending_count,
            auto_resolved=self._resolver.resolved_total,
            rules=len(snapshot.rules),
            channels=len(snapshot.channels),
            auto_resolve_rules=len(snapshot.auto_resolve_rules),
        )
