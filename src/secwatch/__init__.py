"""Secwatch: real-time security event monitoring and alerting."""

__version__ = "0.1.0"

from secwatch.config import (
    ConfigManager,
    EngineConfig,
    find_config,
    load_config,
    save_config,
    validate_config,
)
from secwatch.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    NotificationError,
    RepositoryError,
    SecwatchError,
    ValidationError,
)
from secwatch.models import (
    Alert,
    AlertAction,
    AlertRule,
    AlertStatus,
    AutoResolveRule,
    ChannelType,
    EventSubmission,
    NotificationChannel,
    RuleCondition,
    SecurityEvent,
    Severity,
)
from secwatch.monitor import SecurityMonitor

__all__ = [
    "Alert",
    "AlertAction",
    "AlertRule",
    "AlertStatus",
    "AutoResolveRule",
    "ChannelType",
    "ConfigManager",
    "ConflictError",
    "EngineConfig",
    "EventSubmission",
    "find_config",
    "InvalidTransitionError",
    "load_config",
    "NotFoundError",
    "NotificationChannel",
    "NotificationError",
    "RepositoryError",
    "RuleCondition",
    "save_config",
    "SecurityEvent",
    "SecurityMonitor",
    "SecwatchError",
    "Severity",
    "validate_config",
    "ValidationError",
    "__version__",
]
