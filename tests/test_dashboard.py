"""Tests for dashboard summaries."""

from __future__ import annotations

from datetime import timedelta

import pytest

from secwatch.dashboard.aggregator import DashboardAggregator, default_bucket_minutes
from secwatch.errors import ValidationError
from secwatch.models import Alert, AlertStatus, SecurityEvent, Severity
from secwatch.store.memory import InMemoryRepository


def _event(clock, minutes: float, severity: Severity, source: str, **kw) -> SecurityEvent:
    return SecurityEvent(
        type=kw.pop("type", "auth_failure"),
        source=source,
        severity=severity,
        timestamp=clock() + timedelta(minutes=minutes),
        **kw,
    )


def _alert(clock, minutes: float, status: AlertStatus, group_key: str) -> Alert:
    ts = clock() + timedelta(minutes=minutes)
    return Alert(
        rule_id="r",
        alert_type="auth_failure",
        group_key=group_key,
        title="t",
        severity=Severity.HIGH,
        status=status,
        first_triggered_at=ts,
        last_triggered_at=ts,
        created_at=ts,
    )


@pytest.fixture
def populated(clock):
    """3 critical, 2 high and 10 info events over one hour, plus three alerts."""
    repo = InMemoryRepository()
    specs = (
        [(Severity.CRITICAL, "firewall")] * 3
        + [(Severity.HIGH, "firewall")] * 2
        + [(Severity.INFO, "firewall")]
        + [(Severity.INFO, "auth")] * 5
        + [(Severity.INFO, "vpn")] * 4
    )
    for i, (severity, source) in enumerate(specs):
        repo.add_event(_event(
            clock, i * 4, severity, source,
            related_ip="10.0.0.1" if i % 2 else "10.0.0.2",
            related_user_address="alice@example.com" if source == "auth" else None,
        ))
    repo.add_alert(_alert(clock, 5, AlertStatus.OPEN, "a"))
    repo.add_alert(_alert(clock, 20, AlertStatus.ACKNOWLEDGED, "b"))
    repo.add_alert(_alert(clock, 40, AlertStatus.RESOLVED, "c"))
    return repo


class TestSummary:
    def test_totals(self, clock, populated):
        summary = DashboardAggregator(populated, _clock=clock).get_summary(
            clock(), clock() + timedelta(hours=1),
        )
        totals = summary.totals
        assert totals.total_events == 15
        assert totals.critical_events == 3
        assert totals.high_events == 2
        assert totals.total_alerts == 3
        assert totals.open_alerts == 1
        assert totals.acknowledged_alerts == 1
        assert totals.resolved_alerts == 1

    def test_severity_breakdown_is_zero_filled(self, clock, populated):
        summary = DashboardAggregator(populated).get_summary(clock(), clock() + timedelta(hours=1))
        assert summary.events_by_severity == {
            "info": 10, "low": 0, "medium": 0, "high": 2, "critical": 3,
        }
        assert summary.alerts_by_severity["high"] == 3
        assert summary.alerts_by_status == {"open": 1, "acknowledged": 1, "resolved": 1}

    def test_top_sources(self, clock, populated):
        summary = DashboardAggregator(populated).get_summary(
            clock(), clock() + timedelta(hours=1), top_n=2,
        )
        assert [(r.value, r.count) for r in summary.top_sources] == [
            ("firewall", 6), ("auth", 5),
        ]
        assert summary.events_by_source == {"firewall": 6, "auth": 5, "vpn": 4}

    def test_top_ips_and_addresses(self, clock, populated):
        summary = DashboardAggregator(populated).get_summary(clock(), clock() + timedelta(hours=1))
        assert [(r.value, r.count) for r in summary.top_ips] == [
            ("10.0.0.2", 8), ("10.0.0.1", 7),
        ]
        assert [(r.value, r.count) for r in summary.top_user_addresses] == [
            ("alice@example.com", 5),
        ]

    def test_range_excludes_outside(self, clock, populated):
        summary = DashboardAggregator(populated).get_summary(
            clock() + timedelta(minutes=30), clock() + timedelta(hours=1),
        )
        assert summary.totals.total_events == 7
        assert summary.totals.critical_events == 0
        assert summary.totals.total_alerts == 1

    def test_empty_range(self, clock):
        summary = DashboardAggregator(InMemoryRepository()).get_summary(
            clock(), clock() + timedelta(hours=1),
        )
        assert summary.totals.total_events == 0
        assert summary.top_sources == []
        assert len(summary.timeline) == 4


class TestTimeline:
    def test_buckets_cover_range(self, clock, populated):
        summary = DashboardAggregator(populated).get_summary(
            clock(), clock() + timedelta(hours=1), bucket_minutes=15,
        )
        assert [b.start for b in summary.timeline] == [
            clock() + timedelta(minutes=15 * i) for i in range(4)
        ]
        assert sum(b.events for b in summary.timeline) == 15
        assert sum(b.alerts for b in summary.timeline) == 3
        # events at 0, 4, 8 and 12 minutes land in the first bucket
        first = summary.timeline[0]
        assert first.events == 4
        assert first.critical_events == 3
        assert first.high_events == 1
        assert first.alerts == 1

    def test_end_timestamp_clamped_into_last_bucket(self, clock):
        repo = InMemoryRepository()
        repo.add_event(_event(clock, 60, Severity.LOW, "x"))
        summary = DashboardAggregator(repo).get_summary(
            clock(), clock() + timedelta(hours=1), bucket_minutes=15,
        )
        assert summary.timeline[-1].events == 1

    @pytest.mark.parametrize(
        ("hours", "expected"),
        [(1, 15), (6, 15), (24, 60), (48, 60), (24 * 7, 1440)],
    )
    def test_default_bucket_size(self, clock, hours, expected):
        assert default_bucket_minutes(clock(), clock() + timedelta(hours=hours)) == expected


class TestValidation:
    def test_end_before_start(self, clock):
        with pytest.raises(ValidationError, match="end must be after start"):
            DashboardAggregator(InMemoryRepository()).get_summary(clock(), clock())

    def test_bad_bucket(self, clock):
        with pytest.raises(ValidationError, match="bucket_minutes"):
            DashboardAggregator(InMemoryRepository()).get_summary(
                clock(), clock() + timedelta(hours=1), bucket_minutes=-5,
            )

    def test_bad_top_n(self, clock):
        with pytest.raises(ValidationError, match="top_n"):
            DashboardAggregator(InMemoryRepository()).get_summary(
                clock(), clock() + timedelta(hours=1), top_n=0,
            )
