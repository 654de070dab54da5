"""
Cancelable periodic tasks (nonce rotation, report flush, metrics roll-up).

Author: jetgause
Created: 2025-12-14
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``func`` every ``interval`` seconds on a daemon thread.

    ``cancel`` wakes the thread immediately; the task never runs again after
    it returns.
    """

    def __init__(self, interval: float, func: Callable[[], None], name: str = "periodic-task"):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.func = func
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self):
        if self._thread is not None:
            return

        def loop():
            while not self._stop.wait(self.interval):
                try:
                    self.func()
                except Exception as e:
                    logger.error(f"Error in periodic task {self.name}: {e}")

        self._thread = threading.Thread(target=loop, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"Started periodic task {self.name} (every {self.interval}s)")

    def cancel(self, timeout: Optional[float] = 1.0):
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.debug(f"Cancelled periodic task {self.name}")
