"""
Security Monitor
================

Central path for security events raised by the host application:
- Risk scoring and suspicious-actor tracking
- Authentication failure and brute-force detection
- Suspicious login, SQL injection and XSS signature checks
- Authorization and API usage checks
- Aggregated security metrics

Every event goes through ``report_security_event``: it is scored, the actor
may be flagged, the event is recorded in the threat ledger, and critical
events are surfaced on the event bus.

Author: jetgause
Created: 2025-12-14
Version: 1.0.0
"""

import logging
import re
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, replace
from typing import Any, Callable, Deque, Dict, List, Optional

from editshield_core import events
from editshield_core.config import ThreatDetectionConfig
from editshield_core.events import EventBus
from editshield_core.ledger import ThreatLedger
from editshield_core.models import Severity, ThreatEvent, ThreatKind
from editshield_core.patterns import (
    SQL_INJECTION_PATTERNS,
    XSS_SIGNATURE_PATTERNS,
    PatternClassifier,
)
from editshield_core.risk import RiskScorer

logger = logging.getLogger(__name__)

SENSITIVE_ENDPOINTS = ("/admin", "/users", "/config", "/debug")
ENUMERATION_PATTERN = re.compile(r"/\d+$")


@dataclass
class _AttemptWindow:
    count: int
    last_attempt: float


@dataclass
class _RequestWindow:
    requests: int
    window_start: float


class SecurityMonitor:
    """Scores, records and analyses security events."""

    def __init__(self, config: Optional[ThreatDetectionConfig] = None,
                 ledger: Optional[ThreatLedger] = None,
                 scorer: Optional[RiskScorer] = None,
                 event_bus: Optional[EventBus] = None,
                 clock: Callable[[], float] = time.time,
                 max_events: int = 10000,
                 api_rate_limit: int = 100,
                 api_rate_window: float = 60.0):
        self.config = config or ThreatDetectionConfig()
        self.event_bus = event_bus or EventBus()
        self._clock = clock
        self.ledger = ledger or ThreatLedger(self.config, self.event_bus, clock)
        self.scorer = scorer or RiskScorer(
            high_risk_threshold=self.config.high_risk_threshold, clock=clock
        )
        self.api_rate_limit = api_rate_limit
        self.api_rate_window = api_rate_window

        self._events: Deque[ThreatEvent] = deque(maxlen=max_events)
        self._login_attempts: Dict[str, _AttemptWindow] = {}
        self._api_requests: Dict[str, _RequestWindow] = {}
        self._lock = threading.Lock()
        self._attempts_lock = threading.Lock()

        self._sql_classifier = PatternClassifier(SQL_INJECTION_PATTERNS)
        self._xss_classifier = PatternClassifier(XSS_SIGNATURE_PATTERNS)

    @property
    def login_window(self) -> float:
        return self.config.login_window_ms / 1000.0

    # ========================================================================
    # CORE REPORTING
    # ========================================================================

    def report_security_event(self, event: ThreatEvent) -> ThreatEvent:
        """Score, record and publish an event; returns the scored copy."""
        score = self.scorer.score(event)
        scored = replace(event, risk_score=score)
        self.scorer.observe(scored, score)

        with self._lock:
            self._events.append(scored)
        self.ledger.report(scored)

        logger.warning(
            f"Security event reported: type={scored.type.value} severity={scored.severity.value} "
            f"risk_score={score} source={scored.source} ip={scored.ip}",
            extra={"source": scored.source, "threat_type": scored.type.value,
                   "severity": scored.severity.value},
        )

        if scored.severity == Severity.CRITICAL or score >= self.config.critical_risk_threshold:
            logger.critical(f"Critical security event: {scored.type.value} (risk_score={score})")
            self.event_bus.emit(events.CRITICAL_EVENT, {"threat": scored})

        return scored

    def _event(self, kind: ThreatKind, severity: Severity, user_id: Optional[str],
               ip: Optional[str], user_agent: Optional[str] = None,
               details: Optional[Dict[str, Any]] = None) -> ThreatEvent:
        return ThreatEvent(
            type=kind,
            severity=severity,
            timestamp=self._clock(),
            source=user_id or ip,
            details=details or {},
            ip=ip,
            user_agent=user_agent,
        )

    # ========================================================================
    # AUTHENTICATION
    # ========================================================================

    def check_authentication_failure(self, user_id: str, ip_address: str,
                                     user_agent: Optional[str] = None,
                                     details: Optional[Dict[str, Any]] = None) -> List[ThreatEvent]:
        """Record a failed login; escalates severity and flags brute force."""
        key = f"{ip_address}:{user_id}"
        now = self._clock()
        max_attempts = self.config.max_login_attempts

        with self._attempts_lock:
            attempts = self._login_attempts.get(key)
            if attempts is None or now - attempts.last_attempt > self.login_window:
                attempts = _AttemptWindow(count=0, last_attempt=now)
                self._login_attempts[key] = attempts
            attempts.count += 1
            attempts.last_attempt = now
            count = attempts.count

        if count >= max_attempts * 2:
            severity = Severity.CRITICAL
        elif count >= max_attempts:
            severity = Severity.HIGH
        elif count >= 3:
            severity = Severity.MEDIUM
        else:
            severity = Severity.LOW

        reported = [self.report_security_event(self._event(
            ThreatKind.AUTH_FAILURE, severity, user_id, ip_address, user_agent,
            dict(details or {}, action="login_failed", attempt_count=count,
                 window_start=now - self.login_window),
        ))]

        if count >= max_attempts:
            reported.append(self.report_security_event(self._event(
                ThreatKind.BRUTE_FORCE, Severity.HIGH, user_id, ip_address, user_agent,
                {"action": "brute_force_detected", "total_attempts": count,
                 "window_duration": self.login_window},
            )))
        return reported

    def record_successful_login(self, user_id: str, ip_address: str):
        """Clear failed-attempt tracking after a successful login."""
        with self._attempts_lock:
            self._login_attempts.pop(f"{ip_address}:{user_id}", None)

    def check_suspicious_login(self, user_id: str, ip_address: str,
                               user_agent: Optional[str] = None,
                               details: Optional[Dict[str, Any]] = None) -> List[str]:
        threats = self.scorer.analyze_login(user_id, ip_address, user_agent, details)
        if threats:
            self.report_security_event(self._event(
                ThreatKind.SUSPICIOUS_LOGIN,
                self.scorer.severity_from_login_threats(threats),
                user_id, ip_address, user_agent,
                dict(details or {}, action="suspicious_login_detected", threats=threats),
            ))
        return threats

    # ========================================================================
    # INJECTION SIGNATURES
    # ========================================================================

    def check_sql_injection(self, value: Any, user_id: Optional[str] = None,
                            ip_address: Optional[str] = None,
                            context: Optional[Dict[str, Any]] = None) -> bool:
        """Return True (and report) if ``value`` carries a SQL injection signature."""
        if not isinstance(value, str):
            self._report_invalid_input(value, user_id, ip_address, "sql_injection_check")
            return True

        detected = self._sql_classifier.matching_sources(value)
        if detected:
            self.report_security_event(self._event(
                ThreatKind.SQL_INJECTION, Severity.CRITICAL, user_id, ip_address,
                details={
                    "action": "sql_injection_attempt",
                    "input": value[:500],
                    "context": context or {},
                    "detected_patterns": detected,
                },
            ))
        return bool(detected)

    def check_xss_attempt(self, value: Any, user_id: Optional[str] = None,
                          ip_address: Optional[str] = None,
                          context: Optional[Dict[str, Any]] = None) -> bool:
        """Return True (and report) if ``value`` carries an XSS signature."""
        if not isinstance(value, str):
            self._report_invalid_input(value, user_id, ip_address, "xss_check")
            return True

        detected = self._xss_classifier.matching_sources(value)
        if detected:
            self.report_security_event(self._event(
                ThreatKind.XSS_ATTEMPT, Severity.HIGH, user_id, ip_address,
                details={
                    "action": "xss_attempt",
                    "input": value[:500],
                    "context": context or {},
                    "detected_patterns": detected,
                },
            ))
        return bool(detected)

    def _report_invalid_input(self, value: Any, user_id: Optional[str],
                              ip_address: Optional[str], check: str):
        self.report_security_event(self._event(
            ThreatKind.INVALID_INPUT, Severity.CRITICAL, user_id, ip_address,
            details={"check": check, "received_type": type(value).__name__},
        ))

    # ========================================================================
    # ACCESS AND API USAGE
    # ========================================================================

    def check_api_rate_limit(self, identifier: str, ip_address: str,
                             user_id: Optional[str] = None, action: str = "api_request") -> bool:
        """Count an API request; returns True when the per-minute limit is violated."""
        key = f"{identifier}:{ip_address}"
        now = self._clock()

        with self._attempts_lock:
            window = self._api_requests.get(key)
            if window is None or now - window.window_start > self.api_rate_window:
                window = _RequestWindow(requests=0, window_start=now)
                self._api_requests[key] = window
            window.requests += 1
            requests = window.requests

        if requests > self.api_rate_limit:
            self.report_security_event(self._event(
                ThreatKind.RATE_LIMIT_VIOLATION, Severity.MEDIUM, user_id, ip_address,
                details={
                    "action": action,
                    "requests_per_window": requests,
                    "window_duration": self.api_rate_window,
                    "threshold": self.api_rate_limit,
                },
            ))
            return True
        return False

    def check_unauthorized_access(self, resource: str, required_permission: str,
                                  user_permissions: List[str], user_id: Optional[str] = None,
                                  ip_address: Optional[str] = None) -> bool:
        """Return True (and report) when the user lacks the permission."""
        if required_permission in user_permissions or "admin" in user_permissions:
            return False

        self.report_security_event(self._event(
            ThreatKind.UNAUTHORIZED_ACCESS, Severity.HIGH, user_id, ip_address,
            details={
                "action": "unauthorized_access_attempt",
                "resource": resource,
                "required_permission": required_permission,
                "user_permissions": list(user_permissions),
            },
        ))
        return True

    def check_suspicious_api_usage(self, api_key: str, endpoint: str, method: str,
                                   ip_address: str, user_id: Optional[str] = None) -> List[str]:
        patterns = self._analyze_api_patterns(api_key, endpoint, method, ip_address)
        if not patterns:
            return patterns

        severity = Severity.LOW
        if any("high_frequency" in p or "unusual_endpoint" in p for p in patterns):
            severity = Severity.MEDIUM
        if any("automated_scraping" in p or "data_enumeration" in p for p in patterns):
            severity = Severity.HIGH

        self.report_security_event(self._event(
            ThreatKind.SUSPICIOUS_API_USAGE, severity, user_id, ip_address,
            details={
                "action": "suspicious_api_usage",
                "api_key": mask_api_key(api_key),
                "endpoint": endpoint,
                "method": method,
                "suspicious_patterns": patterns,
            },
        ))
        return patterns

    def _analyze_api_patterns(self, api_key: str, endpoint: str, method: str,
                              ip_address: str) -> List[str]:
        patterns = []
        with self._attempts_lock:
            window = self._api_requests.get(f"{api_key}:{ip_address}")
            requests = window.requests if window else 0
        if requests > 50:
            patterns.append("high_frequency_usage")
        if any(ep in endpoint for ep in SENSITIVE_ENDPOINTS):
            patterns.append("unusual_endpoint_access")
        if method.upper() == "GET" and ENUMERATION_PATTERN.search(endpoint):
            patterns.append("potential_data_enumeration")
        return patterns

    # ========================================================================
    # METRICS AND MAINTENANCE
    # ========================================================================

    def get_security_metrics(self, timeframe: float = 24 * 60 * 60) -> Dict[str, Any]:
        """Summarise events reported within the last ``timeframe`` seconds."""
        cutoff = self._clock() - timeframe
        with self._lock:
            recent = [e for e in self._events if e.timestamp >= cutoff]

        events_by_type = {kind.value: 0 for kind in ThreatKind}
        events_by_severity = {level.value: 0 for level in Severity}
        ip_counts: Dict[str, int] = defaultdict(int)
        distribution = [0, 0, 0, 0, 0]

        for event in recent:
            events_by_type[event.type.value] += 1
            events_by_severity[event.severity.value] += 1
            if event.ip:
                ip_counts[event.ip] += 1
            distribution[min(event.risk_score // 20, 4)] += 1

        top_ips = sorted(ip_counts.items(), key=lambda item: item[1], reverse=True)[:10]
        scores = [e.risk_score for e in recent]

        return {
            "total_events": len(recent),
            "events_by_type": events_by_type,
            "events_by_severity": events_by_severity,
            "top_source_ips": [{"ip": ip, "count": count} for ip, count in top_ips],
            "risk_score_distribution": distribution,
            "average_risk_score": sum(scores) / len(scores) if scores else 0.0,
            "critical_events": events_by_severity[Severity.CRITICAL.value],
        }

    def recent_events(self, limit: Optional[int] = None) -> List[ThreatEvent]:
        with self._lock:
            items = list(self._events)
        return items[-limit:] if limit else items

    def cleanup(self) -> int:
        """Drop stale login-attempt and API windows; returns entries removed."""
        now = self._clock()
        removed = 0
        with self._attempts_lock:
            for key in [k for k, w in self._login_attempts.items()
                        if now - w.last_attempt > self.login_window * 2]:
                del self._login_attempts[key]
                removed += 1
            for key in [k for k, w in self._api_requests.items()
                        if now - w.window_start > self.api_rate_window * 2]:
                del self._api_requests[key]
                removed += 1
        if removed:
            logger.debug(f"Security monitor cleanup removed {removed} stale entries")
        return removed


def mask_api_key(api_key: str) -> str:
    if len(api_key) <= 8:
        return "***"
    return f"{api_key[:4]}***{api_key[-4:]}"
