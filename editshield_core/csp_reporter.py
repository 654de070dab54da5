"""
CSP Violation Pipeline
======================

Ingests browser CSP violation reports and turns them into actionable data:
- Capacity-bounded raw violation list (FIFO eviction)
- Aggregation by (violated directive, blocked URI)
- Rolling metrics by directive, source file, hour of day and browser family
- Alerts: per-minute rate, unique violations per hour, critical directives,
  and 10-minute spike (anomaly) detection
- Batched delivery to a report transport through a circuit breaker with
  exponential-backoff retry; failed batches are re-queued

Author: jetgause
Created: 2025-12-14
Version: 1.0.0
"""

import copy
import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from editshield_core import events
from editshield_core.config import ReporterConfig
from editshield_core.events import EventBus
from editshield_core.models import (
    AggregatedViolation,
    AlertType,
    CSPViolation,
    SecurityAlert,
    Severity,
)
from editshield_core.resilience import CircuitBreaker, retry_with_backoff
from editshield_core.scheduler import PeriodicTask
from editshield_core.transport import HttpReportTransport, ReportTransport

logger = logging.getLogger(__name__)

REPORTER_VERSION = "1.0.0"
MAX_SAMPLES = 5
# Per-aggregate caps; count keeps the full total
MAX_SOURCES = 50
MAX_USER_AGENTS = 20
TOP_N = 10

# Browser report keys (kebab-case) and Reporting API body keys (camelCase)
_REPORT_FIELDS = {
    "document_uri": ("document-uri", "documentURL", "documentUri"),
    "blocked_uri": ("blocked-uri", "blockedURL", "blockedUri"),
    "violated_directive": ("violated-directive", "effective-directive",
                           "effectiveDirective", "violatedDirective"),
    "original_policy": ("original-policy", "originalPolicy"),
    "referrer": ("referrer",),
    "status_code": ("status-code", "statusCode"),
    "source_file": ("source-file", "sourceFile"),
    "line_number": ("line-number", "lineNumber"),
    "column_number": ("column-number", "columnNumber"),
    "sample": ("script-sample", "sample"),
}
_INT_FIELDS = ("status_code", "line_number", "column_number")


def extract_browser(user_agent: str) -> str:
    """Coarse browser family from a user agent string."""
    if not user_agent:
        return "Other"
    if "Edg/" in user_agent or "Edge" in user_agent:
        return "Edge"
    if "Chrome" in user_agent:
        return "Chrome"
    if "Firefox" in user_agent:
        return "Firefox"
    if "Safari" in user_agent:
        return "Safari"
    return "Other"


def _empty_metrics() -> Dict[str, Any]:
    return {
        "total_violations": 0,
        "unique_violations": 0,
        "violations_by_directive": {},
        "violations_by_source": {},
        "violations_per_hour": [0] * 24,
        "top_blocked_uris": [],
        "top_violated_directives": [],
        "browser_distribution": {},
    }


class CSPViolationPipeline:
    """Aggregates, alerts on and forwards CSP violations."""

    def __init__(self, config: Optional[ReporterConfig] = None,
                 transport: Optional[ReportTransport] = None,
                 event_bus: Optional[EventBus] = None,
                 breaker: Optional[CircuitBreaker] = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or ReporterConfig()
        if transport is None and self.config.endpoint:
            transport = HttpReportTransport(self.config.endpoint, timeout=self.config.request_timeout)
        self.transport = transport
        self.event_bus = event_bus or EventBus()
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=self.config.failure_threshold,
            timeout=self.config.circuit_timeout_ms / 1000.0,
            name="csp-report-flush",
        )
        self._clock = clock
        self._sleep = sleep

        self._violations: Deque[CSPViolation] = deque(maxlen=self.config.max_reports)
        self._aggregated: Dict[Tuple[str, str], AggregatedViolation] = {}
        self._metrics = _empty_metrics()
        self._queue: Deque[CSPViolation] = deque()
        self._alerts: Deque[SecurityAlert] = deque(maxlen=self.config.alert_history_limit)

        self._lock = threading.RLock()
        self._flush_lock = threading.Lock()
        self._tasks: List[PeriodicTask] = []

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self):
        """Start periodic flushing and metrics roll-up."""
        if self._tasks:
            return
        if self.transport is not None:
            self._tasks.append(PeriodicTask(
                self.config.reporting_window_ms / 1000.0, self.flush, name="csp-report-flush"
            ))
        if self.config.enable_metrics:
            self._tasks.append(PeriodicTask(
                self.config.metrics_interval_ms / 1000.0, self.update_metrics, name="csp-metrics"
            ))
        for task in self._tasks:
            task.start()

    def destroy(self):
        """Cancel timers and make a last detached attempt to flush pending reports."""
        for task in self._tasks:
            task.cancel()
        self._tasks = []

        if self.pending_count:
            self.flush_in_background()
        logger.info("CSP violation pipeline destroyed")

    # ========================================================================
    # INGESTION
    # ========================================================================

    def report_violation(self, violation: CSPViolation) -> List[SecurityAlert]:
        """Record one violation; returns alerts raised by it."""
        if not violation.timestamp:
            violation = replace(violation, timestamp=self._clock())

        with self._lock:
            self._violations.append(violation)
            self._queue.append(violation)
            while len(self._queue) > self.config.max_reports:
                self._queue.popleft()

            if self.config.aggregate_reports:
                self._aggregate(violation)
            if self.config.enable_metrics:
                self._count(violation)
            alerts = self._check_alerts(violation)

        self.event_bus.emit(events.CSP_VIOLATION, {"violation": violation})
        for alert in alerts:
            self.event_bus.emit(events.CSP_ALERT, {"alert": alert})

        logger.warning(
            f"CSP violation reported: directive={violation.violated_directive} "
            f"blocked_uri={violation.blocked_uri} source={violation.source_file}",
            extra={"directive": violation.violated_directive, "blocked_uri": violation.blocked_uri},
        )
        return alerts

    def ingest_report(self, payload: Any, user_agent: Optional[str] = None) -> List[CSPViolation]:
        """
        Parse and record a report body.

        Accepts ``{"csp-report": {...}}`` browser reports, Reporting API
        entries (a dict or list of ``{"type": "csp-violation", "body": ...}``),
        or camelCase violation dicts.

        Raises:
            ValueError: if the payload is not a recognisable CSP report
        """
        violations = self.parse_report(payload, user_agent)
        for violation in violations:
            self.report_violation(violation)
        return violations

    def parse_report(self, payload: Any, user_agent: Optional[str] = None) -> List[CSPViolation]:
        now = self._clock()
        if isinstance(payload, list):
            entries = [e for e in payload if isinstance(e, dict) and e.get("type") == "csp-violation"]
            if not entries:
                raise ValueError("No csp-violation entries in report list")
            return [self._from_reporting_api(entry, user_agent, now) for entry in entries]

        if not isinstance(payload, dict):
            raise ValueError(f"Unsupported report payload type: {type(payload).__name__}")

        if isinstance(payload.get("csp-report"), dict):
            return [self._from_fields(payload["csp-report"], user_agent or "", now)]
        if payload.get("type") == "csp-violation" and isinstance(payload.get("body"), dict):
            return [self._from_reporting_api(payload, user_agent, now)]
        if "violatedDirective" in payload or "blockedUri" in payload:
            violation = CSPViolation.from_dict(payload)
            if not violation.timestamp:
                violation.timestamp = now
            if not violation.user_agent and user_agent:
                violation.user_agent = user_agent
            return [violation]
        raise ValueError("Payload is not a CSP violation report")

    def _from_reporting_api(self, entry: Dict[str, Any], user_agent: Optional[str],
                            now: float) -> CSPViolation:
        body = dict(entry.get("body") or {})
        if "url" in entry and not any(k in body for k in _REPORT_FIELDS["document_uri"]):
            body["documentURL"] = entry["url"]
        return self._from_fields(body, entry.get("user_agent") or user_agent or "", now)

    @staticmethod
    def _from_fields(fields: Dict[str, Any], user_agent: str, now: float) -> CSPViolation:
        values: Dict[str, Any] = {}
        for name, keys in _REPORT_FIELDS.items():
            for key in keys:
                if fields.get(key) is not None:
                    values[name] = fields[key]
                    break
        if not values.get("violated_directive"):
            raise ValueError("CSP report is missing the violated directive")

        for name in _INT_FIELDS:
            if name in values:
                try:
                    values[name] = int(values[name])
                except (TypeError, ValueError):
                    values[name] = None
        for name in ("document_uri", "blocked_uri", "violated_directive", "original_policy"):
            values[name] = str(values.get(name) or "")

        return CSPViolation(timestamp=now, user_agent=user_agent, **values)

    # ========================================================================
    # AGGREGATION AND METRICS
    # ========================================================================

    def _aggregate(self, violation: CSPViolation):
        key = (violation.violated_directive, violation.blocked_uri)
        aggregate = self._aggregated.get(key)
        if aggregate is None:
            aggregate = AggregatedViolation(
                violated_directive=violation.violated_directive,
                blocked_uri=violation.blocked_uri,
                first_seen=violation.timestamp,
                last_seen=violation.timestamp,
            )
            self._aggregated[key] = aggregate

        aggregate.count += 1
        aggregate.first_seen = min(aggregate.first_seen, violation.timestamp)
        aggregate.last_seen = max(aggregate.last_seen, violation.timestamp)
        if len(aggregate.sources) < MAX_SOURCES:
            aggregate.sources.append(violation.source_file or "unknown")
        if len(aggregate.user_agents) < MAX_USER_AGENTS:
            aggregate.user_agents.add(violation.user_agent)
        if violation.sample and len(aggregate.samples) < MAX_SAMPLES:
            aggregate.samples.append(violation.sample)

    def _count(self, violation: CSPViolation):
        metrics = self._metrics
        metrics["total_violations"] += 1

        by_directive = metrics["violations_by_directive"]
        by_directive[violation.violated_directive] = by_directive.get(violation.violated_directive, 0) + 1

        source = violation.source_file or "unknown"
        metrics["violations_by_source"][source] = metrics["violations_by_source"].get(source, 0) + 1

        hour = datetime.fromtimestamp(violation.timestamp, tz=timezone.utc).hour
        metrics["violations_per_hour"][hour] += 1

        browser = extract_browser(violation.user_agent)
        metrics["browser_distribution"][browser] = metrics["browser_distribution"].get(browser, 0) + 1

    def update_metrics(self) -> Dict[str, Any]:
        """Recompute the unique count and top-N rankings."""
        with self._lock:
            uri_counts: Dict[str, int] = defaultdict(int)
            directive_counts: Dict[str, int] = defaultdict(int)
            for aggregate in self._aggregated.values():
                uri_counts[aggregate.blocked_uri] += aggregate.count
                directive_counts[aggregate.violated_directive] += aggregate.count

            self._metrics["unique_violations"] = len(self._aggregated)
            self._metrics["top_blocked_uris"] = [
                {"uri": uri, "count": count}
                for uri, count in sorted(uri_counts.items(), key=lambda i: (-i[1], i[0]))[:TOP_N]
            ]
            self._metrics["top_violated_directives"] = [
                {"directive": directive, "count": count}
                for directive, count in sorted(directive_counts.items(), key=lambda i: (-i[1], i[0]))[:TOP_N]
            ]
            snapshot = copy.deepcopy(self._metrics)
        return snapshot

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._metrics)

    # ========================================================================
    # ALERTS
    # ========================================================================

    def _check_alerts(self, violation: CSPViolation) -> List[SecurityAlert]:
        now = self._clock()
        thresholds = self.config
        alerts = []

        per_minute = sum(1 for v in self._violations if now - v.timestamp <= 60)
        if per_minute >= thresholds.violations_per_minute:
            alerts.append(self._alert(
                AlertType.THRESHOLD, Severity.HIGH,
                f"High violation rate: {per_minute} violations in the last minute",
                {"violations_per_minute": per_minute}, now,
            ))

        hourly_keys = {
            (v.violated_directive, v.blocked_uri)
            for v in self._violations if now - v.timestamp <= 3600
        }
        if len(hourly_keys) >= thresholds.unique_violations_per_hour:
            alerts.append(self._alert(
                AlertType.THRESHOLD, Severity.MEDIUM,
                f"High unique violation rate: {len(hourly_keys)} unique violations in the last hour",
                {"unique_violations_per_hour": len(hourly_keys)}, now,
            ))

        if any(d in violation.violated_directive for d in thresholds.critical_directives):
            alerts.append(self._alert(
                AlertType.CRITICAL, Severity.CRITICAL,
                f"Critical directive violation: {violation.violated_directive}",
                {"violation": violation.to_dict()}, now,
            ))

        if len(self._violations) >= thresholds.anomaly_min_samples:
            recent = sum(1 for v in self._violations if now - v.timestamp <= 600)
            previous = sum(1 for v in self._violations if 600 < now - v.timestamp <= 1200)
            if recent > previous and recent >= previous * thresholds.anomaly_factor:
                alerts.append(self._alert(
                    AlertType.ANOMALY, Severity.HIGH,
                    f"Violation spike detected: {recent} violations in last 10 minutes "
                    f"(vs {previous} in previous 10 minutes)",
                    {"recent_10min": recent, "previous_10min": previous}, now,
                ))

        return alerts

    def _alert(self, alert_type: AlertType, severity: Severity, message: str,
               data: Dict[str, Any], now: float) -> SecurityAlert:
        alert = SecurityAlert(type=alert_type, severity=severity, message=message,
                              data=data, timestamp=now)
        self._alerts.append(alert)
        logger.warning(f"CSP Alert [{severity.value.upper()}] {alert_type.value}: {message}")
        return alert

    def get_alerts(self, limit: Optional[int] = None) -> List[SecurityAlert]:
        with self._lock:
            alerts = list(self._alerts)
        return alerts[-limit:] if limit else alerts

    # ========================================================================
    # DELIVERY
    # ========================================================================

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def is_reporting(self) -> bool:
        return self._flush_lock.locked()

    def _metadata(self) -> Dict[str, Any]:
        aggregated = None
        if self.config.aggregate_reports:
            aggregated = [a.to_report_dict() for a in self._aggregated.values()]
        return {
            "timestamp": self._clock(),
            "reporterVersion": REPORTER_VERSION,
            "aggregatedData": aggregated,
        }

    def flush(self) -> bool:
        """
        Send queued violations as one batch.

        Only one flush runs at a time; a concurrent call returns False
        immediately. On failure the batch is put back at the front of the
        queue (bounded by ``max_reports``) and False is returned.
        """
        if self.transport is None:
            return False
        if not self._flush_lock.acquire(blocking=False):
            return False

        try:
            with self._lock:
                if not self._queue:
                    return True
                batch = list(self._queue)
                self._queue.clear()
                metadata = self._metadata()

            try:
                self.breaker.call(
                    retry_with_backoff,
                    lambda: self.transport.send(batch, metadata),
                    max_retries=self.config.max_retries,
                    base_delay=self.config.retry_base_delay_ms / 1000.0,
                    max_delay=self.config.retry_max_delay_ms / 1000.0,
                    sleep=self._sleep,
                )
            except Exception as e:
                self._requeue(batch)
                logger.error(f"Failed to send {len(batch)} CSP reports: {e}")
                self.event_bus.emit(events.REPORT_TRANSPORT_FAILED, {
                    "error": str(e),
                    "pending": self.pending_count,
                    "circuit": self.breaker.get_state(),
                })
                return False

            logger.info(f"Sent {len(batch)} CSP violation reports")
            return True
        finally:
            self._flush_lock.release()

    def _requeue(self, batch: List[CSPViolation]):
        with self._lock:
            merged = batch + list(self._queue)
            self._queue = deque(merged[-self.config.max_reports:])

    def flush_in_background(self) -> threading.Thread:
        """Run ``flush`` on a detached daemon thread."""
        thread = threading.Thread(target=self.flush, name="csp-report-flush-once", daemon=True)
        thread.start()
        return thread

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_violations(self, directive: Optional[str] = None, blocked_uri: Optional[str] = None,
                       start: Optional[float] = None, end: Optional[float] = None,
                       limit: Optional[int] = None) -> List[CSPViolation]:
        """Filtered violations, newest first."""
        with self._lock:
            filtered = list(self._violations)

        if directive:
            filtered = [v for v in filtered if directive in v.violated_directive]
        if blocked_uri:
            filtered = [v for v in filtered if blocked_uri in v.blocked_uri]
        if start is not None:
            filtered = [v for v in filtered if v.timestamp >= start]
        if end is not None:
            filtered = [v for v in filtered if v.timestamp <= end]
        if limit:
            filtered = filtered[-limit:]
        return sorted(filtered, key=lambda v: v.timestamp, reverse=True)

    def get_aggregated_violations(self) -> List[AggregatedViolation]:
        with self._lock:
            aggregates = [copy.deepcopy(a) for a in self._aggregated.values()]
        return sorted(aggregates, key=lambda a: a.count, reverse=True)

    def clear_violations(self):
        with self._lock:
            self._violations.clear()
            self._aggregated.clear()
            self._queue.clear()
            self._alerts.clear()
            self._metrics = _empty_metrics()
        logger.info("CSP violation data cleared")

    def generate_report(self) -> Dict[str, Any]:
        """Summary with recommendations and critical issues."""
        metrics = self.update_metrics()
        now = self._clock()
        with self._lock:
            oldest = min((v.timestamp for v in self._violations), default=now)

        top_directives = metrics["top_violated_directives"][:5]
        top_uris = metrics["top_blocked_uris"][:5]
        recommendations: List[str] = []
        critical_issues: List[str] = []

        for entry in top_directives:
            directive, count = entry["directive"], entry["count"]
            if "script-src" in directive:
                if count > 10:
                    critical_issues.append(
                        f"High number of script-src violations ({count}). Review and update script sources."
                    )
                recommendations.append("Consider using nonces or hashes for inline scripts")
                recommendations.append("Audit all script sources and remove unnecessary ones")
            if "style-src" in directive:
                recommendations.append("Move inline styles to external CSS files")
                recommendations.append("Use CSS-in-JS libraries that support CSP nonces")
            if "img-src" in directive:
                recommendations.append("Review image sources and update img-src directive")

        for entry in top_uris:
            uri, count = entry["uri"], entry["count"]
            if "javascript:" in uri or "data:text/html" in uri:
                critical_issues.append(f"Potential XSS attempt blocked: {uri} ({count} times)")
            if "eval" in uri or "inline" in uri:
                recommendations.append("Replace eval() and inline code with safer alternatives")

        return {
            "summary": {
                "total_violations": metrics["total_violations"],
                "unique_violations": metrics["unique_violations"],
                "time_range": {"start": oldest, "end": now},
                "top_directives": top_directives,
                "top_blocked_uris": top_uris,
            },
            "recommendations": list(dict.fromkeys(recommendations)),
            "critical_issues": critical_issues,
        }
