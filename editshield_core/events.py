"""
In-process event bus used to surface security events to the host application.

Author: jetgause
Created: 2025-12-14
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

# Event names
THREAT_DETECTED = "security:threat-detected"
ALERT_THRESHOLD_EXCEEDED = "security:alert-threshold-exceeded"
CRITICAL_EVENT = "security:critical-event"
REPORT_TRANSPORT_FAILED = "security:report-transport-failed"
CSP_VIOLATION = "violation"
CSP_ALERT = "alert"
NONCES_ROTATED = "noncesRotated"
CONFIG_UPDATED = "configUpdated"
INITIALIZED = "initialized"

EventHandler = Callable[[Dict[str, Any]], None]


class EventBus:
    """Minimal publish/subscribe bus.

    Handlers run synchronously on the emitting thread. A failing handler is
    logged and does not prevent the remaining handlers from running.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event_name: str, handler: EventHandler):
        """Register a handler for an event name."""
        with self._lock:
            self._handlers[event_name].append(handler)

    def off(self, event_name: str, handler: EventHandler):
        with self._lock:
            handlers = self._handlers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event_name: str, payload: Dict[str, Any] = None):
        with self._lock:
            handlers = list(self._handlers.get(event_name, []))

        for handler in handlers:
            try:
                handler(payload if payload is not None else {})
            except Exception as e:
                logger.error(f"Error in event handler for {event_name}: {e}")

    def listener_count(self, event_name: str) -> int:
        with self._lock:
            return len(self._handlers.get(event_name, []))

    def clear(self):
        """Remove every registered handler."""
        with self._lock:
            self._handlers.clear()
