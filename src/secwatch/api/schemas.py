"""Pydantic request and response schemas for the HTTP API."""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import HTTPException
from pydantic import BaseModel

from secwatch.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    SecwatchError,
    ValidationError,
)
from secwatch.models import ActionType, AlertStatus
from secwatch.monitor import MonitorStats

# --- Events ---


class EventAccepted(BaseModel):
    """Result of submitting one event."""

    accepted: bool
    event_id: str | None = None
    reason: str | None = None


# --- Alerts ---


class AlertUpdateRequest(BaseModel):
    status: AlertStatus
    notes: str | None = None
    actor: str = "api"


class AlertActionRequest(BaseModel):
    action: ActionType
    notes: str | None = None
    actor: str = "api"


# --- Health ---


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    stats: MonitorStats


# --- Helpers ---


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive query timestamps as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


# --- Errors ---


def http_error(exc: SecwatchError) -> HTTPException:
    """Map an engine error onto the HTTP status the API promises."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail={"errors": exc.errors})
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail={"errors": exc.errors})
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
