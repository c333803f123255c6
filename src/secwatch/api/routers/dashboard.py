"""Dashboard summary API."""

from __future__ import annotations

from datetime import datetime, timedelta

from fastapi import APIRouter, Query

from secwatch.api.schemas import as_utc, http_error
from secwatch.dashboard.models import DashboardSummary
from secwatch.errors import SecwatchError
from secwatch.models import utcnow
from secwatch.monitor import SecurityMonitor

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

_monitor: SecurityMonitor | None = None


def init_router(monitor: SecurityMonitor) -> None:
    global _monitor  # noqa: PLW0603
    _monitor = monitor


def _svc() -> SecurityMonitor:
    assert _monitor is not None, "SecurityMonitor not initialized"
    return _monitor


@router.get("", response_model=DashboardSummary)
def get_summary(
    start: datetime | None = None,
    end: datetime | None = None,
    bucket_minutes: int | None = Query(None, ge=1),
    top_n: int = Query(5, ge=1, le=100),
) -> DashboardSummary:
    """Summary for [start, end]; defaults to the last 24 hours."""
    end = as_utc(end) or utcnow()
    start = as_utc(start) or end - timedelta(hours=24)
    try:
        return _svc().get_summary(start, end, bucket_minutes, top_n)
    except SecwatchError as e:
        raise http_error(e) from e
