"""
Security Manager
================

Facade owning every EditShield component for one host application:
- Input validation and HTML sanitization
- Rate limiting and threat history
- Live scanning of nodes added to the editing surface
- CSP policy lifecycle and violation handling
- Security reports and configuration checks

Construct one instance per host; there are no module-level singletons.
Logging is left to the host unless ``setup_logging=True`` is passed, in
which case the level, format and file from the configuration are applied.

Author: jetgause
Created: 2025-12-14
Version: 1.0.0
"""

import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlsplit

from editshield_core.config import SecurityConfig
from editshield_core.csp_engine import CSPPolicyEngine, PolicySink
from editshield_core.csp_reporter import CSPViolationPipeline
from editshield_core.events import EventBus
from editshield_core.exceptions import ConfigurationError
from editshield_core.ledger import ThreatLedger
from editshield_core.logging_setup import configure_logging
from editshield_core.models import (
    CSPViolation,
    NodeDescriptor,
    Severity,
    ThreatEvent,
    ThreatKind,
    ValidationResult,
)
from editshield_core.monitor import SecurityMonitor
from editshield_core.patterns import PatternClassifier
from editshield_core.rate_limiter import RateLimiter
from editshield_core.risk import RiskScorer
from editshield_core.transport import ReportTransport
from editshield_core.validation import InputValidationGate

logger = logging.getLogger(__name__)

DANGEROUS_SCRIPT_SOURCES = ("data:", "javascript:", "vbscript:")
DANGEROUS_LINK_SCHEMES = ("javascript", "vbscript", "data")
SUSPICIOUS_LINK_DOMAINS = ("evil.com", "malware.org")
RECENT_THREAT_WINDOW = 24 * 60 * 60

# Browsers ignore whitespace and control characters inside URL schemes
_URL_NOISE = re.compile(r"[\x00-\x20\x7f]")


def assess_csp_violation_severity(violation: CSPViolation) -> Severity:
    """Severity of a CSP violation from its directive and blocked URI."""
    directive = violation.violated_directive or ""
    blocked = violation.blocked_uri or ""

    if "script-src" in directive and (
        "javascript:" in blocked or "data:text/html" in blocked or "eval" in blocked
    ):
        return Severity.CRITICAL
    if "object-src" in directive or "base-uri" in directive:
        return Severity.HIGH
    if "script-src" in directive and blocked == "inline":
        return Severity.HIGH
    if "style-src" in directive and blocked == "inline":
        return Severity.MEDIUM
    if blocked.startswith("http"):
        return Severity.MEDIUM
    return Severity.LOW


class SecurityManager:
    """Entry point wiring validation, monitoring and CSP components together."""

    def __init__(self, config: Optional[SecurityConfig] = None,
                 policy_sink: Optional[PolicySink] = None,
                 transport: Optional[ReportTransport] = None,
                 event_bus: Optional[EventBus] = None,
                 clock: Callable[[], float] = time.time,
                 start_background_tasks: bool = True,
                 setup_logging: bool = False):
        self.config = config or SecurityConfig()
        if setup_logging:
            configure_logging(
                self.config.log_level,
                json_format=self.config.log_json,
                log_file=self.config.log_file,
            )
        self.event_bus = event_bus or EventBus()
        self.start_background_tasks = start_background_tasks
        self._clock = clock
        self._destroyed = False

        detection = self.config.threat_detection
        self.ledger = ThreatLedger(detection, self.event_bus, clock)
        self.scorer = RiskScorer(high_risk_threshold=detection.high_risk_threshold, clock=clock)
        self.monitor = SecurityMonitor(detection, self.ledger, self.scorer, self.event_bus, clock)
        self.classifier = PatternClassifier(detection.suspicious_patterns)
        self.rate_limiter = RateLimiter(self.config.rate_limit, on_threat=self.report_threat, clock=clock)
        self.validator = InputValidationGate(
            self.config.input_validation,
            xss=self.config.xss,
            threat_detection=detection,
            classifier=self.classifier,
            rate_limiter=self.rate_limiter,
            clock=clock,
        )

        self.csp_engine: Optional[CSPPolicyEngine] = None
        if self.config.csp.enabled:
            self.csp_engine = CSPPolicyEngine(
                self.config.csp,
                sink=policy_sink,
                event_bus=self.event_bus,
                clock=clock,
                auto_rotate=start_background_tasks,
            )
        self.csp_reporter = CSPViolationPipeline(
            self.config.reporter, transport=transport, event_bus=self.event_bus, clock=clock
        )

        self.initialize()

    def initialize(self):
        if self.csp_engine is not None:
            self.csp_engine.initialize()
        if self.start_background_tasks:
            self.csp_reporter.start()
        logger.info("Security manager initialized")

    # ========================================================================
    # INPUT
    # ========================================================================

    def validate_input(self, value: Any, context: Optional[str] = None,
                       source: Optional[str] = None) -> ValidationResult:
        """Validate an untrusted value and record any threats it carries."""
        result = self.validator.validate(value, context=context, source=source)
        result.threats = [self.report_threat(threat) for threat in result.threats]
        return result

    def sanitize_html(self, html: str) -> str:
        return self.validator.sanitize_html(html)

    def check_rate_limit(self, identifier: str) -> bool:
        return self.rate_limiter.allow(identifier)

    # ========================================================================
    # THREATS
    # ========================================================================

    def report_threat(self, event: ThreatEvent) -> ThreatEvent:
        """Score and record a threat; returns the scored event."""
        return self.monitor.report_security_event(event)

    def get_threat_history(self, source: Optional[str] = None) -> List[ThreatEvent]:
        return self.ledger.history(source)

    def clear_threat_history(self):
        self.ledger.clear()

    def scan_added_node(self, node: NodeDescriptor) -> List[ThreatEvent]:
        """
        Scan a node added to the editing surface and its descendants.

        Scripts with suspicious bodies or dangerous ``src`` schemes are
        reported as ``suspicious_script`` (high); links with dangerous schemes,
        known-bad hosts or unparseable URLs as ``suspicious_link`` (medium).
        """
        found = []
        now = self._clock()

        for element in node.iter_tree():
            tag = (element.tag or "").lower()
            if tag == "script" and self._is_suspicious_script(element):
                found.append(ThreatEvent(
                    type=ThreatKind.SUSPICIOUS_SCRIPT,
                    severity=Severity.HIGH,
                    timestamp=now,
                    details={
                        "src": element.attributes.get("src"),
                        "script": element.text[:500],
                    },
                ))
            elif tag == "a" and "href" in element.attributes:
                href = element.attributes["href"]
                if self._is_suspicious_link(href):
                    found.append(ThreatEvent(
                        type=ThreatKind.SUSPICIOUS_LINK,
                        severity=Severity.MEDIUM,
                        timestamp=now,
                        details={"href": href[:500]},
                    ))

        return [self.report_threat(event) for event in found]

    def _is_suspicious_script(self, element: NodeDescriptor) -> bool:
        if element.text:
            return self.classifier.matches_any(element.text)
        src = _URL_NOISE.sub("", element.attributes.get("src") or "").lower()
        return src.startswith(DANGEROUS_SCRIPT_SOURCES)

    @staticmethod
    def _is_suspicious_link(href: str) -> bool:
        cleaned = _URL_NOISE.sub("", href or "")
        try:
            parts = urlsplit(cleaned)
            hostname = parts.hostname or ""
        except ValueError:
            return True

        if parts.scheme.lower() in DANGEROUS_LINK_SCHEMES:
            return True
        return any(domain in hostname for domain in SUSPICIOUS_LINK_DOMAINS)

    # ========================================================================
    # CSP
    # ========================================================================

    def handle_csp_violation(self, violation: CSPViolation) -> ThreatEvent:
        """Feed a violation to the pipeline and record it as a threat."""
        self.csp_reporter.report_violation(violation)

        if self.csp_engine is not None and self.csp_engine.config.environment == "development":
            self.csp_engine.suggest_remediation(violation)

        return self.report_threat(ThreatEvent(
            type=ThreatKind.CSP_VIOLATION,
            severity=assess_csp_violation_severity(violation),
            timestamp=self._clock(),
            details={
                "violated_directive": violation.violated_directive,
                "blocked_uri": violation.blocked_uri,
                "source_file": violation.source_file,
                "sample": violation.sample,
            },
        ))

    def ingest_report(self, payload: Any, user_agent: Optional[str] = None) -> List[CSPViolation]:
        """
        Parse a browser report body and handle every violation in it.

        Raises:
            ValueError: if the payload is not a CSP report
        """
        violations = self.csp_reporter.parse_report(payload, user_agent)
        for violation in violations:
            self.handle_csp_violation(violation)
        return violations

    def current_nonces(self, session_id: str = "default") -> Optional[Dict[str, str]]:
        if self.csp_engine is None:
            return None
        return self.csp_engine.nonce_attributes(session_id)

    def update_csp_config(self, **changes: Any):
        if self.csp_engine is None:
            raise ConfigurationError("CSP engine not initialized", field_name="csp")
        self.config.csp = self.csp_engine.update_config(**changes)

    # ========================================================================
    # REPORTING
    # ========================================================================

    def generate_security_report(self) -> Dict[str, Any]:
        """Threat summary, CSP summary, recommendations and overall status."""
        now = self._clock()
        threats = self.get_threat_history()
        recent = [t for t in threats if now - t.timestamp < RECENT_THREAT_WINDOW]
        critical = [t for t in threats if t.severity in (Severity.HIGH, Severity.CRITICAL)]

        recommendations: List[str] = []
        status = "secure"

        if critical:
            status = "critical"
            recommendations.append("Address critical security threats immediately")
        elif len(recent) > 10:
            status = "warning"
            recommendations.append("Monitor recent security activity")

        csp_summary = self.csp_reporter.generate_report()
        if csp_summary["critical_issues"]:
            status = "critical"
            recommendations.extend(csp_summary["critical_issues"])
        recommendations.extend(csp_summary["recommendations"])

        if not self.config.csp.enabled:
            recommendations.append("Enable Content Security Policy for better protection")
            if status == "secure":
                status = "warning"
        if self.config.xss.mode != "strict":
            recommendations.append("Use strict XSS protection mode in production")

        return {
            "threat_summary": {
                "total_threats": len(threats),
                "critical_threats": len(critical),
                "recent_threats": len(recent),
            },
            "csp_summary": csp_summary,
            "recommendations": list(dict.fromkeys(recommendations)),
            "security_status": status,
        }

    def validate_security_config(self) -> Dict[str, Any]:
        errors: List[str] = []
        warnings: List[str] = []

        if self.csp_engine is not None:
            errors.extend(self.csp_engine.validate_configuration()["errors"])
            if self.csp_engine.last_policy:
                header = self.csp_engine.guard.validate_header(self.csp_engine.last_policy)
                errors.extend(header.errors)

        xss = self.config.xss
        if xss.enabled and xss.sanitizer is None and xss.custom_sanitizer is None:
            warnings.append("No HTML sanitizer configured - all markup will be stripped")
        if xss.mode == "loose":
            warnings.append("XSS protection is in loose mode - consider stricter settings")
        if not self.config.rate_limit.enabled:
            warnings.append("Rate limiting is disabled - consider enabling for production")
        if not self.config.threat_detection.enabled:
            warnings.append("Threat detection is disabled")

        return {"is_valid": not errors, "errors": errors, "warnings": warnings}

    # ========================================================================
    # TEARDOWN
    # ========================================================================

    def destroy(self):
        """Stop timers, remove the policy and drop all in-memory state."""
        if self._destroyed:
            return
        if self.csp_engine is not None:
            self.csp_engine.destroy()
        self.csp_reporter.destroy()
        self.ledger.clear()
        self.rate_limiter.clear()
        self.scorer.reset_suspicious()
        self._destroyed = True
        logger.info("Security manager destroyed")
