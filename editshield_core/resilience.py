"""
Resilience Primitives
=====================

- ``CircuitBreaker``: fails fast after repeated failures, tests recovery
  after a cooldown (closed -> open -> half-open -> closed)
- ``retry_with_backoff``: exponential backoff with jitter

Both take injectable clocks/sleeps so they can be driven deterministically.

Author: jetgause
Created: 2025-12-14
"""

import logging
import random
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

from editshield_core.exceptions import CircuitOpenError, TransportError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Guards calls to an unreliable dependency."""

    def __init__(self, failure_threshold: int = 5, timeout: float = 60.0,
                 name: str = "circuit", clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.name = name
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Invoke ``func`` unless the circuit is open.

        Raises:
            CircuitOpenError: while the circuit is open and cooling down
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure_time or 0.0)
                if elapsed < self.timeout:
                    raise CircuitOpenError(
                        f"Circuit '{self.name}' is OPEN", retry_after=self.timeout - elapsed
                    )
                self._state = CircuitState.HALF_OPEN
                logger.info(f"Circuit '{self.name}' half-open, testing recovery")

        try:
            result = func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self):
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit '{self.name}' closed")
            self._state = CircuitState.CLOSED
            self._failures = 0

    def _on_failure(self):
        with self._lock:
            self._failures += 1
            self._last_failure_time = self._clock()
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        f"Circuit '{self.name}' opened after {self._failures} failure(s)"
                    )
                self._state = CircuitState.OPEN

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.value,
                "failures": self._failures,
                "last_failure_time": self._last_failure_time,
            }

    def reset(self):
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._last_failure_time = None


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 10.0,
                  backoff_factor: float = 2.0, jitter: float = 0.1) -> float:
    """Delay before retry ``attempt`` (0-based), capped, plus up to ``jitter`` fraction."""
    delay = min(base_delay * (backoff_factor ** attempt), max_delay)
    return delay + delay * jitter * random.random()


def retry_with_backoff(func: Callable[[], Any], max_retries: int = 3,
                       base_delay: float = 1.0, max_delay: float = 10.0,
                       backoff_factor: float = 2.0, jitter: float = 0.1,
                       retry_on: Tuple[Type[BaseException], ...] = (TransportError,),
                       sleep: Callable[[float], None] = time.sleep) -> Any:
    """
    Call ``func`` until it succeeds or ``max_retries`` retries are used up.

    Only exceptions in ``retry_on`` are retried; the last one is re-raised.
    """
    attempt = 0
    while True:
        try:
            return func()
        except retry_on as e:
            if attempt >= max_retries:
                logger.error(f"Giving up after {attempt + 1} attempt(s): {e}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay, backoff_factor, jitter)
            logger.warning(f"Attempt {attempt + 1} failed ({e}), retrying in {delay:.2f}s")
            sleep(delay)
            attempt += 1
