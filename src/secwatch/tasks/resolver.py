"""Auto-resolution of alerts that have gone quiet."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from secwatch.config import ConfigManager
from secwatch.errors import ConflictError, NotFoundError
from secwatch.evaluator.windows import WindowRegistry
from secwatch.models import (
    ActionType,
    Alert,
    AlertAction,
    AlertStatus,
    AutoResolveRule,
    utcnow,
)
from secwatch.store.repository import Repository
from secwatch.templates import render_template

logger = logging.getLogger(__name__)

RESOLVER_ACTOR = "auto-resolver"


class AutoResolver:
    """Close active alerts whose auto-resolve quiet period has elapsed.

    A resolution is committed only if the alert's ``last_triggered_at`` is
    still what the sweep saw and the compare-and-swap succeeds; a triggering
    event that lands in between always wins. The re-read and the write happen
    under the group's window lock, which the evaluator holds while it finds
    and bumps the same alert, so the two never interleave.
    """

    def __init__(
        self,
        config: ConfigManager,
        repository: Repository,
        windows: WindowRegistry | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._repo = repository
        self._windows = windows or WindowRegistry()
        self._clock = _clock or utcnow
        self._resolved_total = 0
        self._aborted_total = 0

    def sweep(
        self,
        now: datetime | None = None,
        cancel: threading.Event | None = None,
    ) -> list[Alert]:
        """Resolve every eligible alert. Returns the alerts resolved."""
        now = now or self._clock()
        snapshot = self._config.snapshot
        resolved: list[Alert] = []

        for alert in self._repo.active_alerts():
            if cancel is not None and cancel.is_set():
                logger.info("Auto-resolve sweep cancelled")
                break
            rule = snapshot.auto_resolve_for(alert.alert_type)
            if rule is None or not self._quiet_long_enough(alert, rule, now):
                continue
            result = self._try_resolve(alert, rule, now)
            if result is not None:
                resolved.append(result)

        if resolved:
            logger.info("Auto-resolved %d alerts", len(resolved))
        return resolved

    @staticmethod
    def _quiet_long_enough(alert: Alert, rule: AutoResolveRule, now: datetime) -> bool:
        return now - alert.last_triggered_at >= timedelta(minutes=rule.resolution_minutes)

    def _try_resolve(self, seen: Alert, rule: AutoResolveRule, now: datetime) -> Alert | None:
        with self._windows.locked(seen.rule_id, seen.group_key):
            return self._commit(seen, rule, now)

    def _commit(self, seen: Alert, rule: AutoResolveRule, now: datetime) -> Alert | None:
        current = self._repo.get_alert(seen.id)
        if current is None or not current.is_active:
            return None
        if current.last_triggered_at != seen.last_triggered_at:
            self._aborted_total += 1
            logger.debug("Alert %s re-triggered during sweep; not resolving", seen.id)
            return None
        if not self._quiet_long_enough(current, rule, now):
            return None

        notes = render_template(
            rule.resolution_notes,
            {
                **current.model_dump(mode="json"),
                "resolution_minutes": f"{rule.resolution_minutes:g}",
                "rule_name": rule.name or rule.id,
            },
        )
        updated = current.model_copy(deep=True)
        updated.status = AlertStatus.RESOLVED
        updated.resolved_at = now
        updated.resolution_notes = notes
        updated.actions.append(
            AlertAction(
                action=ActionType.AUTO_RESOLVE,
                actor=RESOLVER_ACTOR,
                notes=notes,
                timestamp=now,
            ),
        )
        try:
            stored = self._repo.update_alert(updated, current.version)
        except (ConflictError, NotFoundError) as exc:
            self._aborted_total += 1
            logger.debug("Auto-resolve of %s lost a race: %s", seen.id, exc)
            return None

        self._resolved_total += 1
        logger.info("Auto-resolved alert %s via rule %s", stored.id, rule.id)
        return stored

    @property
    def resolved_total(self) -> int:
        return self._resolved_total

    @property
    def aborted_total(self) -> int:
        return self._aborted_total
