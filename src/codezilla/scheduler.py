"""Delayed callbacks for discovery retries."""

import logging
import threading
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class ThreadingScheduler:
    """Runs each callback on a daemon ``threading.Timer``.

    Callbacks must do their own serialisation; the runtime wraps every
    mutation in its lock.
    """

    def call_later(self, delay: float, callback: Callable[[], None]) -> threading.Timer:
        def _run() -> None:
            try:
                callback()
            except Exception as e:
                logger.error(f"Scheduled callback failed: {e}", exc_info=True)

        timer = threading.Timer(max(0.0, delay), _run)
        timer.daemon = True
        timer.start()
        return timer
