"""Core data models for secwatch.

Defines the schemas for:
- Security events (immutable facts ingested from producers)
- Alert rules (when a run of events should raise an alert)
- Alerts and their audit trail (derived, stateful records)
- Notification channels (where alerts are delivered)
- Auto-resolve rules (when quiet alerts are closed)
"""

from __future__ import annotations

import enum
import secrets
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# --- Enums ---


class Severity(enum.StrEnum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def at_least(self, other: Severity) -> bool:
        """True if this severity is equal to or above *other*."""
        return self.rank >= Severity(other).rank


_SEVERITY_ORDER = [
    Severity.INFO,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]


class AlertStatus(enum.StrEnum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class ActionType(enum.StrEnum):
    TRIGGERED = "triggered"
    ACKNOWLEDGE = "acknowledge"
    RESOLVE = "resolve"
    AUTO_RESOLVE = "auto_resolve"
    COMMENT = "comment"


class ChannelType(enum.StrEnum):
    EMAIL = "email"
    WEBHOOK = "webhook"
    SLACK = "slack"


class ConditionOperator(enum.StrEnum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    REGEX = "regex"
    EXISTS = "exists"


GLOBAL_GROUP = "__global__"
"""Group key used when a rule has no ``group_by`` field."""

MISSING_GROUP = "__missing__"
"""Group key for events that lack the rule's ``group_by`` field."""


def new_id(prefix: str) -> str:
    return f"{prefix}-{secrets.token_hex(8)}"


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


# --- Events ---


class EventSubmission(BaseModel):
    """A producer's request to record a security event.

    ``timestamp`` is the producer's own clock; the engine re-stamps accepted
    events at intake and uses its own time for windowing.
    """

    type: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1)
    severity: Severity = Severity.INFO
    description: str = ""
    related_user_address: str | None = None
    related_ip: str | None = None
    related_session_id: str | None = None
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class SecurityEvent(BaseModel):
    """An immutable fact accepted by the engine."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("evt"))
    type: str
    source: str
    severity: Severity
    description: str = ""
    related_user_address: str | None = None
    related_ip: str | None = None
    related_session_id: str | None = None
    timestamp: datetime
    producer_timestamp: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def lookup(self, field: str) -> Any:
        """Resolve an attribute name or ``metadata.<key>`` path on this event.

        Returns None when the field is absent.
        """
        if field.startswith("metadata."):
            value: Any = self.metadata
            for part in field.split(".")[1:]:
                if not isinstance(value, dict) or part not in value:
                    return None
                value = value[part]
            return value
        if field in SecurityEvent.model_fields:
            return getattr(self, field)
        return self.metadata.get(field)


# --- Rules ---


class RuleCondition(BaseModel):
    """A single field comparison that an event must satisfy."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(..., min_length=1)
    operator: ConditionOperator = ConditionOperator.EQ
    value: Any = None


class AlertRule(BaseModel):
    """Describes when a run of matching events raises an alert.

    ``event_type`` of ``"*"`` matches every event type.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = ""
    enabled: bool = True
    event_type: str = Field(..., min_length=1)
    conditions: tuple[RuleCondition, ...] = ()
    group_by: str | None = None
    window_minutes: float = Field(..., gt=0)
    threshold: int = Field(..., gt=0)
    cooldown_minutes: float = Field(0, ge=0)
    alert_severity: Severity = Severity.MEDIUM
    alert_type: str = ""
    title_template: str = "{rule_name}: {count} {event_type} events for {group_key}"
    description_template: str = (
        "{count} '{event_type}' events within {window_minutes} minutes "
        "(threshold {threshold}) for {group_key}."
    )
    notification_channel_ids: tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _defaults_from_identity(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if not data.get("name"):
                data["name"] = data.get("id", "")
            if not data.get("alert_type"):
                data["alert_type"] = data.get("event_type", "")
        return data

    def matches_type(self, event_type: str) -> bool:
        return self.event_type in ("*", event_type)


# --- Alerts ---


class AlertAction(BaseModel):
    """One entry in an alert's audit trail."""

    action: ActionType
    actor: str = "system"
    notes: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class Alert(BaseModel):
    """A stateful record of a rule threshold being met for a group.

    ``version`` is bumped on every committed write and is the token used for
    compare-and-swap updates.
    """

    id: str = Field(default_factory=lambda: new_id("alr"))
    rule_id: str
    alert_type: str
    group_key: str
    source: str = ""
    """Source of the event that opened the alert."""
    title: str
    description: str = ""
    severity: Severity
    status: AlertStatus = AlertStatus.OPEN
    triggering_event_count: int = 0
    triggering_event_ids: list[str] = Field(default_factory=list)
    first_triggered_at: datetime
    last_triggered_at: datetime
    created_at: datetime
    acknowledged_at: datetime | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    actions: list[AlertAction] = Field(default_factory=list)
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status != AlertStatus.RESOLVED


# --- Channels ---


class NotificationChannel(BaseModel):
    """A delivery target with a minimum severity filter."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = ""
    type: ChannelType
    enabled: bool = True
    configuration: dict[str, Any] = Field(default_factory=dict)
    min_severity: Severity = Severity.INFO

    def accepts(self, severity: Severity) -> bool:
        return self.enabled and Severity(severity).at_least(self.min_severity)


REQUIRED_CHANNEL_KEYS: dict[ChannelType, tuple[str, ...]] = {
    ChannelType.EMAIL: ("recipients", "subject_template"),
    ChannelType.WEBHOOK: ("url",),
    ChannelType.SLACK: ("webhook_url", "channel"),
}


# --- Auto-resolution ---


class AutoResolveRule(BaseModel):
    """Closes alerts of a type after a quiet period."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = ""
    enabled: bool = True
    alert_type: str = Field(..., min_length=1)
    resolution_minutes: float = Field(..., gt=0)
    resolution_notes: str = (
        "Auto-resolved: no new events for {resolution_minutes} minutes."
    )
