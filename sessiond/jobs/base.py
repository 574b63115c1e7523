"""
Periodic execution of maintenance jobs on a daemon thread.
"""

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``fn`` after ``initial_delay`` seconds and then every ``interval`` seconds
    until cancelled."""

    def __init__(self, name: str, fn: Callable[[], object], initial_delay: float, interval: float):
        self.name = name
        self.fn = fn
        self.initial_delay = initial_delay
        self.interval = interval
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=name)

    def start(self) -> "PeriodicTask":
        self._thread.start()
        logger.info(
            f"Scheduled {self.name}: first run in {self.initial_delay:.1f}s, "
            f"then every {self.interval:.0f}s"
        )
        return self

    def _loop(self) -> None:
        if self._stopped.wait(self.initial_delay):
            return
        while True:
            try:
                self.fn()
            except Exception as e:
                logger.error(f"{self.name} failed: {e}")
            if self._stopped.wait(self.interval):
                return

    @property
    def cancelled(self) -> bool:
        return self._stopped.is_set()

    def cancel(self) -> None:
        self._stopped.set()
        logger.info(f"Cancelled {self.name}")
