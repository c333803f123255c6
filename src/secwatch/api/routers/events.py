"""Event intake and query API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Query
from fastapi.responses import JSONResponse

from secwatch.api.schemas import EventAccepted, as_utc, http_error
from secwatch.errors import SecwatchError
from secwatch.models import SecurityEvent, Severity
from secwatch.monitor import SecurityMonitor
from secwatch.store.repository import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, EventFilter, Page

router = APIRouter(prefix="/api/events", tags=["events"])

_monitor: SecurityMonitor | None = None


def init_router(monitor: SecurityMonitor) -> None:
    global _monitor  # noqa: PLW0603
    _monitor = monitor


def _svc() -> SecurityMonitor:
    assert _monitor is not None, "SecurityMonitor not initialized"
    return _monitor


@router.post("", response_model=EventAccepted, status_code=202)
def submit_event(payload: dict[str, Any] = Body(...)) -> EventAccepted | JSONResponse:
    try:
        event = _svc().submit_event(payload)
    except SecwatchError as e:
        raise http_error(e) from e
    if event is None:
        return JSONResponse(
            status_code=200,
            content=EventAccepted(accepted=False, reason="rate_limited").model_dump(),
        )
    return EventAccepted(accepted=True, event_id=event.id)


@router.get("", response_model=Page)
def list_events(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    severity: Severity | None = None,
    source: str | None = None,
    type: str | None = None,  # noqa: A002
    start: datetime | None = None,
    end: datetime | None = None,
    related_user_address: str | None = None,
    related_ip: str | None = None,
    related_session_id: str | None = None,
) -> Page:
    flt = EventFilter(
        severity=severity,
        source=source,
        type=type,
        start=as_utc(start),
        end=as_utc(end),
        related_user_address=related_user_address,
        related_ip=related_ip,
        related_session_id=related_session_id,
    )
    return _svc().list_events(flt, page, limit)


@router.get("/{event_id}", response_model=SecurityEvent)
def get_event(event_id: str) -> SecurityEvent:
    try:
        return _svc().get_event(event_id)
    except SecwatchError as e:
        raise http_error(e) from e

