"""
Fixed-window rate limiting per identifier.

Author: jetgause
Created: 2025-12-14
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

from editshield_core.config import RateLimitConfig
from editshield_core.models import RateWindow, Severity, ThreatEvent, ThreatKind

logger = logging.getLogger(__name__)


class RateLimiter:
    """Rate limiting for editor actions.

    The first request, or the first request after a window expires, opens a
    new window with a count of 1. Requests beyond ``max_requests`` within the
    window are refused and reported through ``on_threat``.
    """

    def __init__(self, config: Optional[RateLimitConfig] = None,
                 on_threat: Optional[Callable[[ThreatEvent], None]] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or RateLimitConfig()
        self.on_threat = on_threat
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._lock = threading.Lock()

    def allow(self, identifier: str) -> bool:
        """Check and count a request for ``identifier``."""
        if not self.config.enabled:
            return True

        with self._lock:
            now = self._clock()
            window = self._windows.get(identifier)

            if window is None or now > window.reset_at:
                self._windows[identifier] = RateWindow(
                    count=1, reset_at=now + self.config.window_seconds
                )
                return True

            if window.count >= self.config.max_requests:
                count = window.count
                exceeded = True
            else:
                window.count += 1
                exceeded = False

        if exceeded:
            self._report_exceeded(identifier, count, now)
            return False
        return True

    def remaining(self, identifier: str) -> int:
        """Requests left in the current window."""
        with self._lock:
            window = self._windows.get(identifier)
            if window is None or self._clock() > window.reset_at:
                return self.config.max_requests
            return max(0, self.config.max_requests - window.count)

    def reset(self, identifier: str):
        """Reset rate limit for identifier"""
        with self._lock:
            self._windows.pop(identifier, None)

    def cleanup(self) -> int:
        """Drop expired windows; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, w in self._windows.items() if now > w.reset_at]
            for key in expired:
                del self._windows[key]
        return len(expired)

    def clear(self):
        with self._lock:
            self._windows.clear()

    def _report_exceeded(self, identifier: str, count: int, now: float):
        logger.warning(
            f"Rate limit exceeded for {identifier}: {count}/{self.config.max_requests}",
            extra={"identifier": identifier},
        )
        if self.on_threat is None:
            return
        self.on_threat(ThreatEvent(
            type=ThreatKind.RATE_LIMIT_EXCEEDED,
            severity=Severity.MEDIUM,
            timestamp=now,
            source=identifier,
            details={
                "identifier": identifier,
                "count": count,
                "max_requests": self.config.max_requests,
            },
        ))
