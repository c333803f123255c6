"""Retention sweep for events and resolved alerts."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from pydantic import BaseModel

from secwatch.config import ConfigManager
from secwatch.models import utcnow
from secwatch.store.repository import Repository

if TYPE_CHECKING:
    from secwatch.evaluator.engine import RuleEvaluator

logger = logging.getLogger(__name__)


class RetentionResult(BaseModel):
    events_deleted: int = 0
    alerts_deleted: int = 0
    windows_pruned: int = 0


class RetentionSweeper:
    """Delete events and resolved alerts past their retention period.

    Active alerts are never deleted, however old. Also reaps idle evaluator
    windows so in-memory state stays bounded.
    """

    def __init__(
        self,
        config: ConfigManager,
        repository: Repository,
        evaluator: RuleEvaluator | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._repo = repository
        self._evaluator = evaluator
        self._clock = _clock or utcnow

    def sweep(
        self,
        now: datetime | None = None,
        cancel: threading.Event | None = None,
    ) -> RetentionResult:
        now = now or self._clock()
        snapshot = self._config.snapshot
        result = RetentionResult()

        result.events_deleted = self._repo.delete_events_before(
            now - timedelta(days=snapshot.event_retention_days),
        )
        if cancel is not None and cancel.is_set():
            return result
        result.alerts_deleted = self._repo.delete_resolved_alerts_before(
            now - timedelta(days=snapshot.alert_retention_days),
        )
        if self._evaluator is not None:
            result.windows_pruned = self._evaluator.prune_idle(now)

        if result.events_deleted or result.alerts_deleted:
            logger.info(
                "Retention sweep removed %d events and %d resolved alerts",
                result.events_deleted, result.alerts_deleted,
            )
        return result
