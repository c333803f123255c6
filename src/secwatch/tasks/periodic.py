"""Single-threaded periodic task with cooperative cancellation."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``fn(stop_event)`` every *interval* seconds on one daemon thread.

    Runs never overlap: the next interval starts counting after the previous
    run returns. The stop event is checked at the top of each iteration and
    handed to ``fn`` so long sweeps can bail out between items. An exception
    in ``fn`` is logged and the loop carries on.
    """

    def __init__(
        self,
        name: str,
        interval: float | Callable[[], float],
        fn: Callable[[threading.Event], object],
    ) -> None:
        self._name = name
        self._interval = interval
        self._fn = fn
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._runs = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def runs(self) -> int:
        return self._runs

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"secwatch-{self._name}", daemon=True,
        )
        self._thread.start()
        logger.info("Started periodic task %s", self._name)

    def stop(self, timeout: float | None = None) -> bool:
        """Request cancellation and wait for the current run to finish.

        Returns False if the thread is still alive after *timeout*.
        """
        self._stop.set()
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        stopped = not thread.is_alive()
        if stopped:
            self._thread = None
            logger.info("Stopped periodic task %s", self._name)
        else:
            logger.warning("Periodic task %s did not stop within %ss", self._name, timeout)
        return stopped

    def run_once(self) -> object:
        return self._fn(self._stop)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._fn(self._stop)
            except Exception:
                logger.exception("Periodic task %s failed", self._name)
            self._runs += 1
            self._stop.wait(self._current_interval())

    def _current_interval(self) -> float:
        return self._interval() if callable(self._interval) else self._interval
