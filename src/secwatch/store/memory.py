"""In-memory repository.

Thread-safe via a single re-entrant lock held only for the duration of each
read or write. Events and alerts are kept in timestamp-sorted indexes so
range queries bisect instead of scanning the whole store.
"""

from __future__ import annotations

import bisect
import threading
from datetime import datetime

from secwatch.errors import ConflictError, NotFoundError
from secwatch.models import (
    Alert,
    AlertRule,
    AutoResolveRule,
    NotificationChannel,
    SecurityEvent,
)
from secwatch.store.repository import (
    DEFAULT_PAGE_SIZE,
    AlertFilter,
    EventFilter,
    Page,
    paginate,
)

_GroupKey = tuple[str, str]


class InMemoryRepository:
    """Process-local storage backend. Nothing survives a restart."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._events: dict[str, SecurityEvent] = {}
        self._event_index: list[tuple[datetime, str]] = []
        self._alerts: dict[str, Alert] = {}
        self._alert_index: list[tuple[datetime, str]] = []
        self._active: dict[_GroupKey, str] = {}
        self._latest: dict[_GroupKey, str] = {}
        self._rules: dict[str, AlertRule] = {}
        self._channels: dict[str, NotificationChannel] = {}
        self._auto_resolve: dict[str, AutoResolveRule] = {}

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def add_event(self, event: SecurityEvent) -> None:
        with self._lock:
            if event.id in self._events:
                raise ConflictError(event.id, 0, 0)
            self._events[event.id] = event
            bisect.insort(self._event_index, (event.timestamp, event.id))

    def get_event(self, event_id: str) -> SecurityEvent | None:
        with self._lock:
            return self._events.get(event_id)

    def list_events(
        self, flt: EventFilter | None = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        flt = flt or EventFilter()
        with self._lock:
            lo, hi = self._range(self._event_index, flt.start, flt.end)
            keys = self._event_index[lo:hi]
            matched = [
                self._events[eid] for _, eid in reversed(keys)
                if flt.matches(self._events[eid])
            ]
        return paginate(matched, page, limit)

    def events_between(self, start: datetime, end: datetime) -> list[SecurityEvent]:
        with self._lock:
            lo, hi = self._range(self._event_index, start, end)
            return [self._events[eid] for _, eid in self._event_index[lo:hi]]

    def delete_events_before(self, cutoff: datetime) -> int:
        with self._lock:
            idx = bisect.bisect_left(self._event_index, (cutoff, ""))
            for _, eid in self._event_index[:idx]:
                del self._events[eid]
            del self._event_index[:idx]
            return idx

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def add_alert(self, alert: Alert) -> Alert:
        key = (alert.rule_id, alert.group_key)
        with self._lock:
            if alert.id in self._alerts:
                raise ConflictError(alert.id, 0, self._alerts[alert.id].version)
            if alert.is_active and key in self._active:
                existing = self._alerts[self._active[key]]
                raise ConflictError(existing.id, 0, existing.version)
            stored = alert.model_copy(deep=True, update={"version": 1})
            self._alerts[stored.id] = stored
            bisect.insort(self._alert_index, (stored.created_at, stored.id))
            if stored.is_active:
                self._active[key] = stored.id
            latest_id = self._latest.get(key)
            if latest_id is None or self._alerts[latest_id].created_at <= stored.created_at:
                self._latest[key] = stored.id
            return stored.model_copy(deep=True)

    def get_alert(self, alert_id: str) -> Alert | None:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return alert.model_copy(deep=True) if alert is not None else None

    def update_alert(self, alert: Alert, expected_version: int) -> Alert:
        key = (alert.rule_id, alert.group_key)
        with self._lock:
            current = self._alerts.get(alert.id)
            if current is None:
                raise NotFoundError(f"Alert '{alert.id}' not found")
            if current.version != expected_version:
                raise ConflictError(alert.id, expected_version, current.version)
            stored = alert.model_copy(deep=True, update={"version": expected_version + 1})
            self._alerts[alert.id] = stored
            if stored.is_active:
                self._active[key] = stored.id
            elif self._active.get(key) == stored.id:
                del self._active[key]
            return stored.model_copy(deep=True)

    def list_alerts(
        self, flt: AlertFilter | None = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        flt = flt or AlertFilter()
        with self._lock:
            lo, hi = self._range(self._alert_index, flt.start, flt.end)
            matched = [
                self._alerts[aid].model_copy(deep=True)
                for _, aid in reversed(self._alert_index[lo:hi])
                if flt.matches(self._alerts[aid])
            ]
        return paginate(matched, page, limit)

    def active_alerts(self) -> list[Alert]:
        with self._lock:
            return [self._alerts[aid].model_copy(deep=True) for aid in self._active.values()]

    def find_active_alert(self, rule_id: str, group_key: str) -> Alert | None:
        with self._lock:
            aid = self._active.get((rule_id, group_key))
            return self._alerts[aid].model_copy(deep=True) if aid else None

    def latest_alert(self, rule_id: str, group_key: str) -> Alert | None:
        with self._lock:
            aid = self._latest.get((rule_id, group_key))
            return self._alerts[aid].model_copy(deep=True) if aid else None

    def alerts_between(self, start: datetime, end: datetime) -> list[Alert]:
        with self._lock:
            lo, hi = self._range(self._alert_index, start, end)
            return [
                self._alerts[aid].model_copy(deep=True)
                for _, aid in self._alert_index[lo:hi]
            ]

    def delete_resolved_alerts_before(self, cutoff: datetime) -> int:
        """Drop resolved alerts created before *cutoff*; active ones are kept."""
        with self._lock:
            idx = bisect.bisect_left(self._alert_index, (cutoff, ""))
            keep: list[tuple[datetime, str]] = []
            removed = 0
            for entry in self._alert_index[:idx]:
                alert = self._alerts[entry[1]]
                if alert.is_active:
                    keep.append(entry)
                    continue
                del self._alerts[alert.id]
                key = (alert.rule_id, alert.group_key)
                if self._latest.get(key) == alert.id:
                    del self._latest[key]
                removed += 1
            self._alert_index[:idx] = keep
            return removed

    # ------------------------------------------------------------------
    # Configuration entities
    # ------------------------------------------------------------------

    def put_rule(self, rule: AlertRule) -> None:
        with self._lock:
            self._rules[rule.id] = rule

    def get_rule(self, rule_id: str) -> AlertRule | None:
        with self._lock:
            return self._rules.get(rule_id)

    def list_rules(self) -> list[AlertRule]:
        with self._lock:
            return sorted(self._rules.values(), key=lambda r: r.id)

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def put_channel(self, channel: NotificationChannel) -> None:
        with self._lock:
            self._channels[channel.id] = channel

    def get_channel(self, channel_id: str) -> NotificationChannel | None:
        with self._lock:
            return self._channels.get(channel_id)

    def list_channels(self) -> list[NotificationChannel]:
        with self._lock:
            return sorted(self._channels.values(), key=lambda c: c.id)

    def delete_channel(self, channel_id: str) -> bool:
        with self._lock:
            return self._channels.pop(channel_id, None) is not None

    def put_auto_resolve_rule(self, rule: AutoResolveRule) -> None:
        with self._lock:
            self._auto_resolve[rule.id] = rule

    def get_auto_resolve_rule(self, rule_id: str) -> AutoResolveRule | None:
        with self._lock:
            return self._auto_resolve.get(rule_id)

    def list_auto_resolve_rules(self) -> list[AutoResolveRule]:
        with self._lock:
            return sorted(self._auto_resolve.values(), key=lambda r: r.id)

    def delete_auto_resolve_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._auto_resolve.pop(rule_id, None) is not None

    def close(self) -> None:
        pass

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _range(
        index: list[tuple[datetime, str]],
        start: datetime | None,
        end: datetime | None,
    ) -> tuple[int, int]:
        lo = bisect.bisect_left(index, (start, "")) if start is not None else 0
        hi = bisect.bisect_right(index, (end, "\uffff")) if end is not None else len(index)
        return lo, hi
