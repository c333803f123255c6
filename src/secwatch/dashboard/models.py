"""Dashboard summary data models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class RankedValue(BaseModel):
    """A value and how many events carried it."""

    value: str
    count: int


class TimelineBucket(BaseModel):
    """Event and alert counts for one time bucket."""

    start: datetime
    events: int = 0
    alerts: int = 0
    critical_events: int = 0
    high_events: int = 0


class SummaryTotals(BaseModel):
    total_events: int
    total_alerts: int
    open_alerts: int
    acknowledged_alerts: int
    resolved_alerts: int
    critical_events: int
    high_events: int


class DashboardSummary(BaseModel):
    """Aggregated view of one reporting period."""

    start: datetime
    end: datetime
    generated_at: datetime
    bucket_minutes: int
    totals: SummaryTotals
    events_by_severity: dict[str, int]
    events_by_source: dict[str, int]
    events_by_type: dict[str, int]
    alerts_by_severity: dict[str, int]
    alerts_by_status: dict[str, int]
    top_sources: list[RankedValue]
    top_ips: list[RankedValue]
    top_user_addresses: list[RankedValue]
    timeline: list[TimelineBucket]
