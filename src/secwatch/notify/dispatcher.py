"""Notification dispatch.

``dispatch()`` queues delivery on a worker pool and returns at once, so rule
evaluation never waits on a slow or unreachable channel. Each channel is
tried independently with bounded exponential backoff; a failure is logged
and recorded, never raised to the evaluator and never blocks other
channels.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime

from pydantic import BaseModel

from secwatch.config import ConfigManager
from secwatch.errors import NotificationError
from secwatch.models import Alert, AlertRule, ChannelType, NotificationChannel, utcnow
from secwatch.notify.channels import SENDERS, AlertMessage, ChannelSender, build_message

logger = logging.getLogger(__name__)


class DeliveryResult(BaseModel):
    """Outcome of delivering one alert to one channel."""

    alert_id: str
    channel_id: str
    channel_type: ChannelType
    success: bool
    attempts: int
    error: str | None = None
    finished_at: datetime


class NotificationDispatcher:
    """Route alerts to channels and deliver them off the evaluation path."""

    def __init__(
        self,
        config: ConfigManager,
        senders: dict[ChannelType, ChannelSender] | None = None,
        history_size: int = 500,
        _sleep: Callable[[float], object] | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._senders = senders if senders is not None else dict(SENDERS)
        self._stopping = threading.Event()
        self._sleep = _sleep or self._stopping.wait
        self._clock = _clock or utcnow
        self._executor = ThreadPoolExecutor(
            max_workers=config.snapshot.dispatch_workers,
            thread_name_prefix="secwatch-notify",
        )
        self._lock = threading.Lock()
        self._pending: set[Future] = set()
        self._history: deque[DeliveryResult] = deque(maxlen=history_size)
        self._closed = False
        self._dropped = 0

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route(self, alert: Alert, rule: AlertRule) -> list[NotificationChannel]:
        """Enabled channels referenced by *rule* whose minimum severity is met."""
        snapshot = self._config.snapshot
        channels = []
        for channel_id in rule.notification_channel_ids:
            channel = snapshot.channel(channel_id)
            if channel is None:
                logger.warning(
                    "Rule %s references missing channel %s", rule.id, channel_id,
                )
                continue
            if channel.accepts(alert.severity):
                channels.append(channel)
        return channels

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def dispatch(self, alert: Alert, rule: AlertRule) -> Future | None:
        """Queue delivery of *alert*. Returns the job's future, or None if
        there is nothing to send, the backlog of queued jobs is full or the
        dispatcher is shut down."""
        if not self.route(alert, rule):
            return None
        with self._lock:
            if self._closed:
                logger.warning("Dispatcher closed; not delivering alert %s", alert.id)
                return None
            backlog = self._config.snapshot.max_pending_notifications
            if len(self._pending) >= backlog:
                self._dropped += 1
                if self._dropped == 1 or self._dropped % 100 == 0:
                    logger.error(
                        "Notification backlog full (%d jobs); dropped %d notifications so far",
                        backlog, self._dropped,
                    )
                return None
            future = self._executor.submit(self.deliver, alert, rule)
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def deliver(self, alert: Alert, rule: AlertRule) -> list[DeliveryResult]:
        """Deliver to every routed channel synchronously (used by the workers)."""
        message = build_message(alert, rule)
        results = []
        for channel in self.route(alert, rule):
            result = self._deliver_one(message, channel)
            with self._lock:
                self._history.append(result)
            results.append(result)
        return results

    def _deliver_one(self, message: AlertMessage, channel: NotificationChannel) -> DeliveryResult:
        snapshot = self._config.snapshot
        max_attempts = snapshot.delivery_max_attempts
        sender = self._senders.get(channel.type)
        error: str | None = None
        attempts = 0

        if sender is None:
            error = f"No sender for channel type '{channel.type}'"
        else:
            for attempt in range(1, max_attempts + 1):
                attempts = attempt
                try:
                    sender.send(message, channel)
                except NotificationError as exc:
                    error = str(exc)
                except Exception as exc:
                    error = f"{type(exc).__name__}: {exc}"
                else:
                    logger.info(
                        "Delivered alert %s to %s channel %s",
                        message.alert.id, channel.type, channel.id,
                    )
                    return DeliveryResult(
                        alert_id=message.alert.id,
                        channel_id=channel.id,
                        channel_type=channel.type,
                        success=True,
                        attempts=attempt,
                        finished_at=self._clock(),
                    )
                if attempt == max_attempts or self._stopping.is_set():
                    break
                delay = min(
                    snapshot.delivery_backoff_seconds * 2 ** (attempt - 1),
                    snapshot.delivery_backoff_max_seconds,
                )
                logger.warning(
                    "Delivery of alert %s to channel %s failed (attempt %d/%d): %s; "
                    "retrying in %.1fs",
                    message.alert.id, channel.id, attempt, max_attempts, error, delay,
                )
                self._sleep(delay)

        logger.error(
            "Giving up delivering alert %s to channel %s after %d attempts: %s",
            message.alert.id, channel.id, attempts, error,
        )
        return DeliveryResult(
            alert_id=message.alert.id,
            channel_id=channel.id,
            channel_type=channel.type,
            success=False,
            attempts=attempts,
            error=error,
            finished_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self, grace_seconds: float | None = None) -> int:
        """Stop accepting work and wait up to *grace_seconds* for in-flight sends.

        Returns the number of jobs abandoned.
        """
        if grace_seconds is None:
            grace_seconds = self._config.snapshot.shutdown_grace_seconds
        with self._lock:
            self._closed = True
            pending = set(self._pending)

        _done, not_done = wait(pending, timeout=grace_seconds) if pending else (set(), set())
        self._stopping.set()
        if not_done:
            logger.warning(
                "Abandoning %d notification jobs still in flight after %.1fs grace",
                len(not_done), grace_seconds,
            )
        self._executor.shutdown(wait=False, cancel_futures=True)
        return len(not_done)

    def recent_deliveries(self) -> list[DeliveryResult]:
        with self._lock:
            return list(self._history)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def dropped_count(self) -> int:
        """Notifications refused because the backlog was full."""
        with self._lock:
            return self._dropped

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        exc = future.exception() if not future.cancelled() else None
        if exc is not None:
            logger.error("Notification job crashed: %s", exc)
