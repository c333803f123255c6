"""Engine configuration: loading, validation, persistence and atomic swaps.

Searches for ``secwatch.yaml`` in the current directory and parent
directories, parses it into an immutable ``EngineConfig`` snapshot, and
resolves relative paths against the config file's location.

Validation never stops at the first problem: every violation is collected
and raised together in a single ``ValidationError``.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field

from secwatch.errors import NotFoundError, ValidationError
from secwatch.models import (
    REQUIRED_CHANNEL_KEYS,
    AlertRule,
    AutoResolveRule,
    ConditionOperator,
    NotificationChannel,
)

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "secwatch.yaml"

_SECTIONS: dict[str, type[BaseModel]] = {
    "rules": AlertRule,
    "channels": NotificationChannel,
    "auto_resolve_rules": AutoResolveRule,
}


class EngineConfig(BaseModel):
    """Immutable snapshot of everything the engine is configured with."""

    model_config = ConfigDict(frozen=True)

    rules: tuple[AlertRule, ...] = ()
    channels: tuple[NotificationChannel, ...] = ()
    auto_resolve_rules: tuple[AutoResolveRule, ...] = ()

    max_events_per_minute: int = Field(1000, ge=1)
    """Global ingestion cap; events beyond it are dropped and counted."""

    event_retention_days: float = Field(30, gt=0)
    alert_retention_days: float = Field(90, gt=0)

    auto_resolve_interval_seconds: float = Field(60, gt=0)
    retention_interval_seconds: float = Field(3600, gt=0)

    dispatch_workers: int = Field(4, ge=1)
    delivery_max_attempts: int = Field(3, ge=1)
    delivery_backoff_seconds: float = Field(1.0, ge=0)
    delivery_backoff_max_seconds: float = Field(30.0, ge=0)
    max_pending_notifications: int = Field(1000, ge=1)
    shutdown_grace_seconds: float = Field(5.0, ge=0)

    evaluator_max_retries: int = Field(5, ge=1)
    """How many times a lost compare-and-swap is re-read and retried."""

    store: Literal["memory", "sqlite"] = "memory"
    db_path: str | None = None

    def rule(self, rule_id: str) -> AlertRule | None:
        return next((r for r in self.rules if r.id == rule_id), None)

    def channel(self, channel_id: str) -> NotificationChannel | None:
        return next((c for c in self.channels if c.id == channel_id), None)

    def auto_resolve_rule(self, rule_id: str) -> AutoResolveRule | None:
        return next((r for r in self.auto_resolve_rules if r.id == rule_id), None)

    def auto_resolve_for(self, alert_type: str) -> AutoResolveRule | None:
        """First enabled auto-resolve rule for *alert_type*."""
        return next(
            (r for r in self.auto_resolve_rules if r.enabled and r.alert_type == alert_type),
            None,
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# ------------------------------------------------------------------
# Parsing and validation
# ------------------------------------------------------------------


def parse_config(data: dict[str, Any], base: Path | None = None) -> EngineConfig:
    """Build an ``EngineConfig`` from a plain mapping.

    Each rule, channel and auto-resolve rule is parsed on its own so that a
    single ``ValidationError`` can report every malformed entry, followed by
    the cross-entity checks of ``validate_config``.
    """
    if not isinstance(data, dict):
        raise ValidationError(
            f"Expected a mapping for the engine configuration, got {type(data).__name__}"
        )

    errors: list[str] = []
    parsed: dict[str, Any] = {}

    for section, model in _SECTIONS.items():
        raw_items = data.get(section) or []
        if not isinstance(raw_items, list):
            errors.append(f"{section}: expected a list, got {type(raw_items).__name__}")
            continue
        items = []
        for idx, raw in enumerate(raw_items):
            label = raw.get("id", idx) if isinstance(raw, dict) else idx
            try:
                items.append(model.model_validate(raw))
            except pydantic.ValidationError as exc:
                errors.extend(ValidationError.describe(exc, f"{section}[{label}]."))
        parsed[section] = tuple(items)

    settings = {k: v for k, v in data.items() if k not in _SECTIONS}
    for key in settings:
        if key not in EngineConfig.model_fields:
            errors.append(f"{key}: unknown configuration key")
    settings = {k: v for k, v in settings.items() if k in EngineConfig.model_fields}

    if base is not None and settings.get("db_path"):
        settings["db_path"] = str((base / settings["db_path"]).resolve())

    config: EngineConfig | None = None
    try:
        config = EngineConfig(**settings, **parsed)
    except pydantic.ValidationError as exc:
        errors.extend(ValidationError.describe(exc))

    if config is not None:
        errors.extend(validate_config(config))

    if errors:
        raise ValidationError(errors)
    assert config is not None
    return config


def validate_config(config: EngineConfig) -> list[str]:
    """Return every cross-entity violation in *config* (empty when valid)."""
    errors: list[str] = []

    for section in _SECTIONS:
        seen: set[str] = set()
        for item in getattr(config, section):
            if item.id in seen:
                errors.append(f"{section}: duplicate id '{item.id}'")
            seen.add(item.id)

    channel_ids = {c.id for c in config.channels}
    for rule in config.rules:
        if rule.threshold <= 0:
            errors.append(f"rules[{rule.id}]: threshold must be positive")
        if rule.window_minutes <= 0:
            errors.append(f"rules[{rule.id}]: window_minutes must be positive")
        for channel_id in rule.notification_channel_ids:
            if channel_id not in channel_ids:
                errors.append(
                    f"rules[{rule.id}]: unknown notification channel '{channel_id}'"
                )
        for cond in rule.conditions:
            if cond.operator == ConditionOperator.REGEX:
                try:
                    re.compile(str(cond.value))
                except re.error as exc:
                    errors.append(
                        f"rules[{rule.id}]: invalid regex for '{cond.field}': {exc}"
                    )
            elif cond.operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
                if not isinstance(cond.value, (list, tuple, set)):
                    errors.append(
                        f"rules[{rule.id}]: '{cond.operator}' on '{cond.field}' needs a list value"
                    )

    for channel in config.channels:
        for key in REQUIRED_CHANNEL_KEYS[channel.type]:
            if not channel.configuration.get(key):
                errors.append(
                    f"channels[{channel.id}]: {channel.type} channel requires '{key}'"
                )
        recipients = channel.configuration.get("recipients")
        if recipients is not None and not isinstance(recipients, list):
            errors.append(f"channels[{channel.id}]: 'recipients' must be a list")

    for ar in config.auto_resolve_rules:
        if ar.resolution_minutes <= 0:
            errors.append(f"auto_resolve_rules[{ar.id}]: resolution_minutes must be positive")

    if config.store == "sqlite" and not config.db_path:
        errors.append("db_path: required when store is 'sqlite'")

    return errors


# ------------------------------------------------------------------
# Files
# ------------------------------------------------------------------


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``secwatch.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> tuple[EngineConfig, Path | None]:
    """Load an engine config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Return a default ``EngineConfig``.

    Returns the config and the file it came from (``None`` for defaults).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    if config_path is None:
        return EngineConfig(), None

    text = config_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ValidationError(f"Invalid YAML in {config_path}: {exc}") from exc

    return parse_config(data, base=config_path.parent), config_path


def save_config(config: EngineConfig, path: str | Path) -> Path:
    """Write *config* as YAML, replacing the file atomically."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_suffix(target.suffix + ".tmp")
    tmp.write_text(
        yaml.safe_dump(config.to_dict(), sort_keys=False, default_flow_style=False),
        encoding="utf-8",
    )
    tmp.replace(target)
    return target


# ------------------------------------------------------------------
# Manager
# ------------------------------------------------------------------


class ConfigManager:
    """Holds the current ``EngineConfig`` snapshot and swaps it atomically.

    Readers take ``manager.snapshot`` once and work against that value; a
    concurrent ``apply()`` never mutates a snapshot already handed out.
    Subscribers are called (outside the lock) after each successful swap.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        path: str | Path | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._edit_lock = threading.Lock()
        self._subscribers: list[Callable[[EngineConfig], None]] = []

    @property
    def snapshot(self) -> EngineConfig:
        return self._config

    @property
    def path(self) -> Path | None:
        return self._path

    def subscribe(self, callback: Callable[[EngineConfig], None]) -> None:
        self._subscribers.append(callback)

    def load(self, path: str | Path | None = None) -> EngineConfig:
        """Load from *path* (or the remembered path / auto-discovery) and apply."""
        config, found = load_config(path if path is not None else self._path)
        if found is not None:
            self._path = found
        return self.apply(config)

    def save(self, path: str | Path | None = None) -> Path:
        target = Path(path) if path is not None else self._path
        if target is None:
            raise ValueError("No config path to save to")
        written = save_config(self._config, target)
        self._path = written
        logger.info("Saved engine configuration to %s", written)
        return written

    def validate(self, config: EngineConfig | None = None) -> list[str]:
        return validate_config(config if config is not None else self._config)

    def apply(self, config: EngineConfig) -> EngineConfig:
        """Validate *config* and make it the current snapshot.

        Raises ``ValidationError`` listing every violation; the current
        snapshot is left untouched in that case.
        """
        errors = validate_config(config)
        if errors:
            raise ValidationError(errors)
        with self._lock:
            self._config = config
        for callback in list(self._subscribers):
            callback(config)
        return config

    def apply_dict(self, data: dict[str, Any]) -> EngineConfig:
        base = self._path.parent if self._path is not None else None
        return self.apply(parse_config(data, base=base))

    # --- entity helpers (each produces a new snapshot) ---

    def _replace(self, section: str, item: BaseModel | None, item_id: str) -> EngineConfig:
        with self._edit_lock:
            return self._replace_locked(section, item, item_id)

    def _replace_locked(
        self, section: str, item: BaseModel | None, item_id: str,
    ) -> EngineConfig:
        current = self._config
        items = [i for i in getattr(current, section) if i.id != item_id]
        existed = len(items) != len(getattr(current, section))
        if item is None:
            if not existed:
                raise NotFoundError(f"{section}: '{item_id}' not found")
        else:
            original = list(getattr(current, section))
            idx = next((n for n, i in enumerate(original) if i.id == item_id), None)
            if idx is None:
                items.append(item)
            else:
                items.insert(idx, item)
        return self.apply(current.model_copy(update={section: tuple(items)}))

    def upsert_rule(self, rule: AlertRule) -> EngineConfig:
        return self._replace("rules", rule, rule.id)

    def delete_rule(self, rule_id: str) -> EngineConfig:
        return self._replace("rules", None, rule_id)

    def upsert_channel(self, channel: NotificationChannel) -> EngineConfig:
        return self._replace("channels", channel, channel.id)

    def delete_channel(self, channel_id: str) -> EngineConfig:
        return self._replace("channels", None, channel_id)

    def upsert_auto_resolve_rule(self, rule: AutoResolveRule) -> EngineConfig:
        return self._replace("auto_resolve_rules", rule, rule.id)

    def delete_auto_resolve_rule(self, rule_id: str) -> EngineConfig:
        return self._replace("auto_resolve_rules", None, rule_id)
