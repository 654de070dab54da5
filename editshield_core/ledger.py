"""
Threat Ledger
=============

Capacity-bounded threat history per source with threshold alerting.

Every report is published as ``security:threat-detected``; when the number
of events from one source within the trailing alert window reaches the
configured threshold, ``security:alert-threshold-exceeded`` is published as
well. The threshold is re-evaluated on every report.

Author: jetgause
Created: 2025-12-14
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from editshield_core import events
from editshield_core.config import ThreatDetectionConfig
from editshield_core.events import EventBus
from editshield_core.models import ThreatEvent

logger = logging.getLogger(__name__)

UNKNOWN_SOURCE = "unknown"


class ThreatLedger:
    """Append-only, per-source threat history."""

    def __init__(self, config: Optional[ThreatDetectionConfig] = None,
                 event_bus: Optional[EventBus] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or ThreatDetectionConfig()
        self.event_bus = event_bus or EventBus()
        self._clock = clock
        self._history: Dict[str, Deque[ThreatEvent]] = {}
        self._lock = threading.RLock()

    def report(self, event: ThreatEvent):
        """Record an event and evaluate the alert threshold for its source."""
        key = event.source or UNKNOWN_SOURCE
        threshold = self.config.alert_threshold

        with self._lock:
            history = self._history.get(key)
            if history is None:
                history = deque(maxlen=self.config.history_limit)
                self._history[key] = history
            history.append(event)

            cutoff = self._clock() - self.config.alert_window_seconds
            recent = [t for t in history if t.timestamp > cutoff]

        self.event_bus.emit(events.THREAT_DETECTED, {"threat": event})

        if len(recent) >= threshold:
            logger.warning(
                f"Alert threshold exceeded for {key}: {len(recent)} threats in the last hour"
            )
            self.event_bus.emit(events.ALERT_THRESHOLD_EXCEEDED, {
                "source": key,
                "threats": recent,
                "threshold": threshold,
            })

    def history(self, source: Optional[str] = None) -> List[ThreatEvent]:
        """Events for one source, or all events newest first."""
        with self._lock:
            if source is not None:
                return list(self._history.get(source, ()))
            all_threats = [t for history in self._history.values() for t in history]
        return sorted(all_threats, key=lambda t: t.timestamp, reverse=True)

    def sources(self) -> List[str]:
        with self._lock:
            return list(self._history.keys())

    def count(self, source: Optional[str] = None) -> int:
        with self._lock:
            if source is not None:
                return len(self._history.get(source, ()))
            return sum(len(h) for h in self._history.values())

    def clear(self):
        """Reset all history."""
        with self._lock:
            self._history.clear()
        logger.info("Threat history cleared")
