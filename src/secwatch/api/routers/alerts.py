"""Alert query and lifecycle API."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query

from secwatch.api.schemas import AlertActionRequest, AlertUpdateRequest, as_utc, http_error
from secwatch.errors import SecwatchError
from secwatch.models import Alert, AlertStatus, Severity
from secwatch.monitor import SecurityMonitor
from secwatch.store.repository import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, AlertFilter, Page

router = APIRouter(prefix="/api/alerts", tags=["alerts"])

_monitor: SecurityMonitor | None = None


def init_router(monitor: SecurityMonitor) -> None:
    global _monitor  # noqa: PLW0603
    _monitor = monitor


def _svc() -> SecurityMonitor:
    assert _monitor is not None, "SecurityMonitor not initialized"
    return _monitor


@router.get("", response_model=Page)
def list_alerts(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    severity: Severity | None = None,
    status: AlertStatus | None = None,
    source: str | None = None,
    rule_id: str | None = None,
    alert_type: str | None = None,
    group_key: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> Page:
    flt = AlertFilter(
        severity=severity,
        status=status,
        source=source,
        rule_id=rule_id,
        alert_type=alert_type,
        group_key=group_key,
        start=as_utc(start),
        end=as_utc(end),
    )
    return _svc().list_alerts(flt, page, limit)


@router.get("/{alert_id}", response_model=Alert)
def get_alert(alert_id: str) -> Alert:
    try:
        return _svc().get_alert(alert_id)
    except SecwatchError as e:
        raise http_error(e) from e


@router.put("/{alert_id}", response_model=Alert)
def update_alert(alert_id: str, body: AlertUpdateRequest) -> Alert:
    """Acknowledge or resolve an alert."""
    try:
        return _svc().update_alert_status(alert_id, body.status, body.actor, body.notes)
    except SecwatchError as e:
        raise http_error(e) from e


@router.post("/{alert_id}/actions", response_model=Alert, status_code=201)
def add_action(alert_id: str, body: AlertActionRequest) -> Alert:
    try:
        return _svc().add_alert_action(alert_id, body.action, body.actor, body.notes)
    except SecwatchError as e:
        raise http_error(e) from e
