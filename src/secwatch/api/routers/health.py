"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from secwatch import __version__
from secwatch.api.schemas import HealthResponse
from secwatch.monitor import SecurityMonitor

router = APIRouter(tags=["health"])

_monitor: SecurityMonitor | None = None


def init_router(monitor: SecurityMonitor) -> None:
    global _monitor  # noqa: PLW0603
    _monitor = monitor


@router.get("/api/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    assert _monitor is not None, "SecurityMonitor not initialized"
    return HealthResponse(version=__version__, stats=_monitor.stats())
