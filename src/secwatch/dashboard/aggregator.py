"""Dashboard aggregation over stored events and alerts."""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from secwatch.dashboard.models import (
    DashboardSummary,
    RankedValue,
    SummaryTotals,
    TimelineBucket,
)
from secwatch.errors import ValidationError
from secwatch.models import AlertStatus, Severity, utcnow
from secwatch.store.repository import Repository

DEFAULT_TOP_N = 5


def default_bucket_minutes(start: datetime, end: datetime) -> int:
    """15 minutes up to 6h, hourly up to 48h, daily beyond."""
    span = end - start
    if span <= timedelta(hours=6):
        return 15
    if span <= timedelta(hours=48):
        return 60
    return 24 * 60


def _ranked(counter: Counter, top_n: int) -> list[RankedValue]:
    # ties broken by value so rankings are stable
    ordered = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))
    return [RankedValue(value=value, count=count) for value, count in ordered[:top_n]]


def _count_by(values: Iterable[str]) -> dict[str, int]:
    return dict(Counter(values).most_common())


class DashboardAggregator:
    """Read-only summaries for a time range."""

    def __init__(
        self,
        repository: Repository,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repository
        self._clock = _clock or utcnow

    def get_summary(
        self,
        start: datetime,
        end: datetime,
        bucket_minutes: int | None = None,
        top_n: int = DEFAULT_TOP_N,
    ) -> DashboardSummary:
        if end <= start:
            raise ValidationError("end must be after start")
        if bucket_minutes is not None and bucket_minutes <= 0:
            raise ValidationError("bucket_minutes must be positive")
        if top_n <= 0:
            raise ValidationError("top_n must be positive")
        bucket_minutes = bucket_minutes or default_bucket_minutes(start, end)

        events = self._repo.events_between(start, end)
        alerts = self._repo.alerts_between(start, end)

        events_by_severity = {s.value: 0 for s in Severity}
        for event in events:
            events_by_severity[event.severity.value] += 1
        alerts_by_severity = {s.value: 0 for s in Severity}
        for alert in alerts:
            alerts_by_severity[alert.severity.value] += 1
        alerts_by_status = {s.value: 0 for s in AlertStatus}
        for alert in alerts:
            alerts_by_status[alert.status.value] += 1

        sources = Counter(e.source for e in events)
        ips = Counter(e.related_ip for e in events if e.related_ip)
        addresses = Counter(e.related_user_address for e in events if e.related_user_address)

        totals = SummaryTotals(
            total_events=len(events),
            total_alerts=len(alerts),
            open_alerts=alerts_by_status[AlertStatus.OPEN.value],
            acknowledged_alerts=alerts_by_status[AlertStatus.ACKNOWLEDGED.value],
            resolved_alerts=alerts_by_status[AlertStatus.RESOLVED.value],
            critical_events=events_by_severity[Severity.CRITICAL.value],
            high_events=events_by_severity[Severity.HIGH.value],
        )

        return DashboardSummary(
            start=start,
            end=end,
            generated_at=self._clock(),
            bucket_minutes=bucket_minutes,
            totals=totals,
            events_by_severity=events_by_severity,
            events_by_source=_count_by(e.source for e in events),
            events_by_type=_count_by(e.type for e in events),
            alerts_by_severity=alerts_by_severity,
            alerts_by_status=alerts_by_status,
            top_sources=_ranked(sources, top_n),
            top_ips=_ranked(ips, top_n),
            top_user_addresses=_ranked(addresses, top_n),
            timeline=self._timeline(start, end, bucket_minutes, events, alerts),
        )

    @staticmethod
    def _timeline(start, end, bucket_minutes, events, alerts) -> list[TimelineBucket]:
        size = timedelta(minutes=bucket_minutes)
        count = max(1, math.ceil((end - start) / size))
        buckets = [TimelineBucket(start=start + i * size) for i in range(count)]

        def index(ts: datetime) -> int:
            return min(int((ts - start) / size), count - 1)

        for event in events:
            bucket = buckets[index(event.timestamp)]
            bucket.events += 1
            if event.severity == Severity.CRITICAL:
                bucket.critical_events += 1
            elif event.severity == Severity.HIGH:
                bucket.high_events += 1
        for alert in alerts:
            buckets[index(alert.created_at)].alerts += 1
        return buckets
