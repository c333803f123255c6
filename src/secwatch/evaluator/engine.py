"""Rule evaluator: matches accepted events against active rules.

For every enabled rule whose type and conditions match, the event is added
to the rule's sliding window for its group. Once the window holds at least
``threshold`` events the evaluator either bumps the group's active alert or
opens a new one, subject to the rule's creation cooldown.

Alert writes go through the repository's compare-and-swap; a lost race is
re-read and retried, never overwritten.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from pydantic import BaseModel

from secwatch.config import ConfigManager, EngineConfig
from secwatch.errors import ConflictError, RepositoryError
from secwatch.evaluator.conditions import group_key_for, rule_matches
from secwatch.evaluator.windows import GroupWindow, WindowRegistry
from secwatch.models import (
    ActionType,
    Alert,
    AlertAction,
    AlertRule,
    SecurityEvent,
    utcnow,
)
from secwatch.store.repository import Repository
from secwatch.templates import render_template

if TYPE_CHECKING:
    from secwatch.notify.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

MAX_TRACKED_EVENT_IDS = 50


class EvaluatorStats(BaseModel):
    alerts_created: int = 0
    alerts_updated: int = 0
    alerts_suppressed: int = 0
    conflicts_retried: int = 0
    active_windows: int = 0


@dataclass
class _Outcome:
    alert: Alert
    created: bool
    notify: bool


class RuleEvaluator:
    """Evaluate events against the current rule set and raise alerts."""

    def __init__(
        self,
        config: ConfigManager,
        repository: Repository,
        dispatcher: NotificationDispatcher | None = None,
        windows: WindowRegistry | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._repo = repository
        self._dispatcher = dispatcher
        self._windows = windows or WindowRegistry()
        self._clock = _clock or utcnow
        self._stats_lock = threading.Lock()
        self._stats = EvaluatorStats()
        self._rules_seen = {r.id: r for r in config.snapshot.rules}
        config.subscribe(self._on_config_change)

    @property
    def windows(self) -> WindowRegistry:
        return self._windows

    def on_event(self, event: SecurityEvent) -> list[Alert]:
        """Run *event* through every enabled rule.

        Returns the alerts created or updated. A failing rule is logged and
        does not stop the others; a storage failure is re-raised after all
        rules have been tried.
        """
        snapshot = self._config.snapshot
        outcomes: list[tuple[_Outcome, AlertRule]] = []
        storage_error: RepositoryError | None = None

        for rule in snapshot.rules:
            if not rule.enabled or not rule_matches(rule, event):
                continue
            try:
                outcome = self._process(rule, event, snapshot)
            except RepositoryError as exc:
                logger.exception("Storage failure evaluating rule %s", rule.id)
                storage_error = storage_error or exc
                continue
            except Exception:
                logger.exception(
                    "Rule %s failed on event %s", rule.id, event.id,
                )
                continue
            if outcome is not None:
                outcomes.append((outcome, rule))

        # Dispatch after every window lock has been released.
        for outcome, rule in outcomes:
            if outcome.notify and self._dispatcher is not None:
                self._dispatcher.dispatch(outcome.alert, rule)

        if storage_error is not None:
            raise storage_error
        return [o.alert for o, _ in outcomes]

    # ------------------------------------------------------------------
    # Windowing
    # ------------------------------------------------------------------

    def _process(
        self, rule: AlertRule, event: SecurityEvent, snapshot: EngineConfig,
    ) -> _Outcome | None:
        group_key = group_key_for(rule, event)

        with self._windows.locked(rule.id, group_key) as window:
            count = window.add(
                event.timestamp, event.id, timedelta(minutes=rule.window_minutes),
            )
            if count < rule.threshold:
                return None
            return self._raise_or_update(
                rule, group_key, window, event, count, snapshot.evaluator_max_retries,
            )

    def _raise_or_update(
        self,
        rule: AlertRule,
        group_key: str,
        window: GroupWindow,
        event: SecurityEvent,
        count: int,
        max_retries: int,
    ) -> _Outcome | None:
        """Create or bump the group's alert. Caller holds the window lock."""
        for _attempt in range(max_retries):
            active = self._repo.find_active_alert(rule.id, group_key)

            if active is not None:
                try:
                    stored = self._bump(active, event)
                except ConflictError:
                    self._incr("conflicts_retried")
                    continue
                self._incr("alerts_updated")
                material = stored.triggering_event_count % rule.threshold == 0
                return _Outcome(stored, created=False, notify=material)

            if self._in_cooldown(rule, group_key, window, event.timestamp):
                self._incr("alerts_suppressed")
                logger.debug(
                    "Suppressed alert for rule %s group %s (cooldown)", rule.id, group_key,
                )
                return None

            try:
                stored = self._repo.add_alert(self._new_alert(rule, group_key, window, event, count))
            except ConflictError:
                # someone else opened the group's alert first; bump it instead
                self._incr("conflicts_retried")
                continue
            window.last_alert_created_at = stored.created_at
            window.cooldown_loaded = True
            self._incr("alerts_created")
            logger.info(
                "Alert %s opened by rule %s for %s (%d events)",
                stored.id, rule.id, group_key, count,
            )
            return _Outcome(stored, created=True, notify=True)

        logger.error(
            "Gave up on rule %s group %s after %d conflicting writes",
            rule.id, group_key, max_retries,
        )
        raise ConflictError(f"{rule.id}/{group_key}", -1, None)

    def _bump(self, active: Alert, event: SecurityEvent) -> Alert:
        updated = active.model_copy(deep=True)
        updated.triggering_event_count += 1
        if event.timestamp > updated.last_triggered_at:
            updated.last_triggered_at = event.timestamp
        ids = [*updated.triggering_event_ids, event.id]
        updated.triggering_event_ids = ids[-MAX_TRACKED_EVENT_IDS:]
        return self._repo.update_alert(updated, active.version)

    def _in_cooldown(
        self, rule: AlertRule, group_key: str, window: GroupWindow, now: datetime,
    ) -> bool:
        if rule.cooldown_minutes <= 0:
            return False
        if not window.cooldown_loaded:
            latest = self._repo.latest_alert(rule.id, group_key)
            window.last_alert_created_at = latest.created_at if latest else None
            window.cooldown_loaded = True
        last = window.last_alert_created_at
        if last is None:
            return False
        return now - last < timedelta(minutes=rule.cooldown_minutes)

    @staticmethod
    def _new_alert(
        rule: AlertRule,
        group_key: str,
        window: GroupWindow,
        event: SecurityEvent,
        count: int,
    ) -> Alert:
        context = {
            **event.metadata,
            **event.model_dump(exclude={"metadata"}),
            "rule_id": rule.id,
            "rule_name": rule.name,
            "group_key": group_key,
            "count": count,
            "threshold": rule.threshold,
            "window_minutes": f"{rule.window_minutes:g}",
            "event_type": event.type,
            "source": event.source,
        }
        return Alert(
            rule_id=rule.id,
            alert_type=rule.alert_type,
            group_key=group_key,
            source=event.source,
            title=render_template(rule.title_template, context),
            description=render_template(rule.description_template, context),
            severity=rule.alert_severity,
            triggering_event_count=count,
            triggering_event_ids=window.event_ids()[-MAX_TRACKED_EVENT_IDS:],
            first_triggered_at=window.first_timestamp() or event.timestamp,
            last_triggered_at=event.timestamp,
            created_at=event.timestamp,
            actions=[
                AlertAction(
                    action=ActionType.TRIGGERED,
                    notes=f"Threshold {rule.threshold} reached with {count} events",
                    timestamp=event.timestamp,
                ),
            ],
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def prune_idle(self, now: datetime | None = None) -> int:
        """Drop windows that can no longer contribute to an alert or cooldown."""
        now = now or self._clock()
        horizons = {
            r.id: timedelta(minutes=max(r.window_minutes, r.cooldown_minutes))
            for r in self._config.snapshot.rules
        }
        removed = self._windows.prune_idle(now, horizons)
        if removed:
            logger.debug("Pruned %d idle windows", removed)
        return removed

    def _on_config_change(self, config: EngineConfig) -> None:
        current = {r.id: r for r in config.rules}
        for rule_id, old in self._rules_seen.items():
            new = current.get(rule_id)
            if new is None or _window_shape(new) != _window_shape(old):
                self._windows.drop_rule(rule_id)
        self._rules_seen = current

    def stats(self) -> EvaluatorStats:
        with self._stats_lock:
            return self._stats.model_copy(update={"active_windows": len(self._windows)})

    def _incr(self, name: str) -> None:
        with self._stats_lock:
            setattr(self._stats, name, getattr(self._stats, name) + 1)


def _window_shape(rule: AlertRule) -> tuple:
    return (rule.event_type, rule.conditions, rule.group_by, rule.window_minutes)
