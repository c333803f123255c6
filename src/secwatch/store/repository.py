"""Repository protocol, query filters and pagination for events and alerts."""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from secwatch.models import (
    Alert,
    AlertRule,
    AlertStatus,
    AutoResolveRule,
    NotificationChannel,
    SecurityEvent,
    Severity,
)

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 500


class EventFilter(BaseModel):
    """Criteria for listing events. Unset fields do not filter."""

    severity: Severity | None = None
    source: str | None = None
    type: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    related_user_address: str | None = None
    related_ip: str | None = None
    related_session_id: str | None = None

    def matches(self, event: SecurityEvent) -> bool:
        if self.severity is not None and event.severity != self.severity:
            return False
        if self.source is not None and event.source != self.source:
            return False
        if self.type is not None and event.type != self.type:
            return False
        if self.start is not None and event.timestamp < self.start:
            return False
        if self.end is not None and event.timestamp > self.end:
            return False
        if (
            self.related_user_address is not None
            and event.related_user_address != self.related_user_address
        ):
            return False
        if self.related_ip is not None and event.related_ip != self.related_ip:
            return False
        return not (
            self.related_session_id is not None
            and event.related_session_id != self.related_session_id
        )


class AlertFilter(BaseModel):
    """Criteria for listing alerts. Time range applies to ``created_at``."""

    severity: Severity | None = None
    status: AlertStatus | None = None
    rule_id: str | None = None
    alert_type: str | None = None
    group_key: str | None = None
    source: str | None = None
    start: datetime | None = None
    end: datetime | None = None

    def matches(self, alert: Alert) -> bool:
        if self.severity is not None and alert.severity != self.severity:
            return False
        if self.status is not None and alert.status != self.status:
            return False
        if self.rule_id is not None and alert.rule_id != self.rule_id:
            return False
        if self.alert_type is not None and alert.alert_type != self.alert_type:
            return False
        if self.group_key is not None and alert.group_key != self.group_key:
            return False
        if self.source is not None and alert.source != self.source:
            return False
        if self.start is not None and alert.created_at < self.start:
            return False
        return not (self.end is not None and alert.created_at > self.end)


class Page(BaseModel):
    """One page of a listing. ``pages`` is at least 1 even when empty."""

    items: list[Any]
    total: int
    page: int
    limit: int
    pages: int


def clamp_paging(page: int, limit: int) -> tuple[int, int]:
    return max(page, 1), min(max(limit, 1), MAX_PAGE_SIZE)


def paginate(items: Sequence[Any], page: int, limit: int) -> Page:
    """Slice an already-ordered sequence into a ``Page``."""
    page, limit = clamp_paging(page, limit)
    total = len(items)
    offset = (page - 1) * limit
    return Page(
        items=list(items[offset:offset + limit]),
        total=total,
        page=page,
        limit=limit,
        pages=max(1, math.ceil(total / limit)),
    )


@runtime_checkable
class Repository(Protocol):
    """Storage backend for events, alerts and configuration entities.

    ``update_alert`` is a compare-and-swap: it commits only if the stored
    alert still carries *expected_version*, bumps the version and returns
    the stored copy; otherwise it raises ``ConflictError``.
    """

    # --- events ---

    def add_event(self, event: SecurityEvent) -> None: ...

    def get_event(self, event_id: str) -> SecurityEvent | None: ...

    def list_events(
        self, flt: EventFilter | None = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page: ...

    def events_between(self, start: datetime, end: datetime) -> list[SecurityEvent]: ...

    def delete_events_before(self, cutoff: datetime) -> int: ...

    # --- alerts ---

    def add_alert(self, alert: Alert) -> Alert: ...

    def get_alert(self, alert_id: str) -> Alert | None: ...

    def update_alert(self, alert: Alert, expected_version: int) -> Alert: ...

    def list_alerts(
        self, flt: AlertFilter | None = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page: ...

    def active_alerts(self) -> list[Alert]: ...

    def find_active_alert(self, rule_id: str, group_key: str) -> Alert | None: ...

    def latest_alert(self, rule_id: str, group_key: str) -> Alert | None: ...

    def alerts_between(self, start: datetime, end: datetime) -> list[Alert]: ...

    def delete_resolved_alerts_before(self, cutoff: datetime) -> int: ...

    # --- configuration entities ---

    def put_rule(self, rule: AlertRule) -> None: ...

    def get_rule(self, rule_id: str) -> AlertRule | None: ...

    def list_rules(self) -> list[AlertRule]: ...

    def delete_rule(self, rule_id: str) -> bool: ...

    def put_channel(self, channel: NotificationChannel) -> None: ...

    def get_channel(self, channel_id: str) -> NotificationChannel | None: ...

    def list_channels(self) -> list[NotificationChannel]: ...

    def delete_channel(self, channel_id: str) -> bool: ...

    def put_auto_resolve_rule(self, rule: AutoResolveRule) -> None: ...

    def get_auto_resolve_rule(self, rule_id: str) -> AutoResolveRule | None: ...

    def list_auto_resolve_rules(self) -> list[AutoResolveRule]: ...

    def delete_auto_resolve_rule(self, rule_id: str) -> bool: ...

    def close(self) -> None: ...
