"""Event intake: validate, stamp, cap, store and forward producer events."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

import pydantic
from pydantic import BaseModel

from secwatch.config import ConfigManager
from secwatch.errors import RepositoryError, ValidationError
from secwatch.intake.limiter import IngestionLimiter
from secwatch.models import EventSubmission, SecurityEvent, utcnow
from secwatch.store.repository import Repository

if TYPE_CHECKING:
    from secwatch.evaluator.engine import RuleEvaluator

logger = logging.getLogger(__name__)


class IntakeStats(BaseModel):
    accepted_events: int = 0
    rejected_events: int = 0
    dropped_events: int = 0
    events_in_window: int = 0


class EventIntake:
    """Entry point for producers.

    ``submit`` is safe to call from many threads. The only shared lock on the
    hot path is the ingestion limiter's, held for a constant-time update.
    Windowing downstream uses the intake timestamp, never the producer's.
    """

    def __init__(
        self,
        config: ConfigManager,
        repository: Repository,
        evaluator: RuleEvaluator | None = None,
        limiter: IngestionLimiter | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._repo = repository
        self._evaluator = evaluator
        self._limiter = limiter or IngestionLimiter()
        self._clock = _clock or utcnow
        self._stats_lock = threading.Lock()
        self._accepted = 0
        self._rejected = 0
        self._dropped = 0

    def submit(self, payload: EventSubmission | dict[str, Any]) -> SecurityEvent | None:
        """Accept one event.

        Returns the stored ``SecurityEvent``, or ``None`` when the event was
        dropped by the ingestion cap. Raises ``ValidationError`` for malformed
        input; nothing is stored in that case. A ``RepositoryError`` from the
        store is re-raised after the ingestion slot is handed back.
        """
        try:
            submission = (
                payload if isinstance(payload, EventSubmission)
                else EventSubmission.model_validate(payload)
            )
        except pydantic.ValidationError as exc:
            self._count("_rejected")
            raise ValidationError.from_pydantic(exc) from exc

        if not self._limiter.try_acquire(self._config.snapshot.max_events_per_minute):
            dropped = self._count("_dropped")
            if dropped == 1 or dropped % 1000 == 0:
                logger.warning(
                    "Ingestion cap reached; dropped %d events so far", dropped,
                )
            return None

        event = SecurityEvent(
            type=submission.type,
            source=submission.source,
            severity=submission.severity,
            description=submission.description,
            related_user_address=submission.related_user_address,
            related_ip=submission.related_ip,
            related_session_id=submission.related_session_id,
            timestamp=self._clock(),
            producer_timestamp=submission.timestamp,
            metadata=dict(submission.metadata),
        )

        try:
            self._repo.add_event(event)
        except RepositoryError:
            # an event that was never stored does not use ingestion capacity
            self._limiter.release()
            raise
        self._count("_accepted")
        logger.debug("Accepted event %s (%s from %s)", event.id, event.type, event.source)

        if self._evaluator is not None:
            self._evaluator.on_event(event)
        return event

    def stats(self) -> IntakeStats:
        with self._stats_lock:
            return IntakeStats(
                accepted_events=self._accepted,
                rejected_events=self._rejected,
                dropped_events=self._dropped,
                events_in_window=self._limiter.in_window(),
            )

    def _count(self, attr: str) -> int:
        with self._stats_lock:
            value = getattr(self, attr) + 1
            setattr(self, attr, value)
            return value
