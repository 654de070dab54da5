"""
Risk Scoring
============

Weighted, bounded (0-100) risk scores for threat events:
- Base weight per threat kind
- Severity multiplier
- Threat-intelligence bonus for known-bad source IPs
- Flat bonus for actors already flagged suspicious

All weights are configurable defaults; they are hand-tuned and not
calibrated against real attack data.

Author: jetgause
Created: 2025-12-14
Version: 1.0.0
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from editshield_core.models import Severity, ThreatEvent, ThreatIntelligence, ThreatKind

logger = logging.getLogger(__name__)

DEFAULT_TYPE_WEIGHTS: Dict[ThreatKind, int] = {
    ThreatKind.AUTH_FAILURE: 10,
    ThreatKind.SUSPICIOUS_LOGIN: 30,
    ThreatKind.BRUTE_FORCE: 60,
    ThreatKind.SQL_INJECTION: 90,
    ThreatKind.XSS_ATTEMPT: 80,
    ThreatKind.UNAUTHORIZED_ACCESS: 70,
    ThreatKind.PRIVILEGE_ESCALATION: 95,
    ThreatKind.DATA_EXFILTRATION: 100,
    ThreatKind.RATE_LIMIT_VIOLATION: 20,
    ThreatKind.MALICIOUS_FILE_UPLOAD: 85,
    ThreatKind.SUSPICIOUS_API_USAGE: 40,
    ThreatKind.ACCOUNT_TAKEOVER: 95,
    ThreatKind.FRAUD_ATTEMPT: 90,
    # Editing-surface threats
    ThreatKind.BLOCKED_PATTERN: 50,
    ThreatKind.SUSPICIOUS_PATTERN: 40,
    ThreatKind.RATE_LIMIT_EXCEEDED: 20,
    ThreatKind.CSP_VIOLATION: 40,
    ThreatKind.SUSPICIOUS_SCRIPT: 80,
    ThreatKind.SUSPICIOUS_LINK: 40,
    ThreatKind.INVALID_INPUT: 50,
}

DEFAULT_SEVERITY_MULTIPLIERS: Dict[Severity, float] = {
    Severity.LOW: 1.0,
    Severity.MEDIUM: 1.3,
    Severity.HIGH: 1.6,
    Severity.CRITICAL: 2.0,
}

DEFAULT_INTEL_BONUSES: Dict[Severity, int] = {
    Severity.LOW: 5,
    Severity.MEDIUM: 15,
    Severity.HIGH: 30,
    Severity.CRITICAL: 50,
}

SUSPICIOUS_ACTOR_BONUS = 20
AUTOMATED_TOOL_MARKERS = ("curl", "wget")
MIN_USER_AGENT_LENGTH = 20


class RiskScorer:
    """Computes risk scores and tracks suspicious actors."""

    def __init__(self, type_weights: Optional[Dict[ThreatKind, int]] = None,
                 severity_multipliers: Optional[Dict[Severity, float]] = None,
                 intel_bonuses: Optional[Dict[Severity, int]] = None,
                 suspicious_bonus: int = SUSPICIOUS_ACTOR_BONUS,
                 high_risk_threshold: int = 70,
                 clock: Callable[[], float] = time.time):
        self.type_weights = dict(DEFAULT_TYPE_WEIGHTS)
        if type_weights:
            self.type_weights.update(type_weights)
        self.severity_multipliers = dict(severity_multipliers or DEFAULT_SEVERITY_MULTIPLIERS)
        self.intel_bonuses = dict(intel_bonuses or DEFAULT_INTEL_BONUSES)
        self.suspicious_bonus = suspicious_bonus
        self.high_risk_threshold = high_risk_threshold
        self._clock = clock

        self._threat_intel: Dict[str, ThreatIntelligence] = {}
        self._suspicious: Set[str] = set()
        self._lock = threading.Lock()

    # ========================================================================
    # SCORING
    # ========================================================================

    def score(self, event: ThreatEvent) -> int:
        """Return the event's risk score in [0, 100]."""
        score = float(self.type_weights.get(event.type, 0))
        score *= self.severity_multipliers.get(event.severity, 1.0)

        with self._lock:
            intel = self._threat_intel.get(event.ip) if event.ip else None
            flagged = event.source is not None and event.source in self._suspicious

        if intel is not None:
            score += self.intel_bonuses.get(intel.risk_level, 0)
        if flagged:
            score += self.suspicious_bonus

        return int(min(max(_round_half_up(score), 0), 100))

    def observe(self, event: ThreatEvent, score: Optional[int] = None) -> int:
        """Score an event and flag its actor when the score is high-risk."""
        if score is None:
            score = self.score(event)
        if event.source and score >= self.high_risk_threshold:
            with self._lock:
                newly_flagged = event.source not in self._suspicious
                self._suspicious.add(event.source)
            if newly_flagged:
                logger.warning(
                    f"Actor {event.source} marked as suspicious "
                    f"(risk_score={score}, event_type={event.type.value})"
                )
        return score

    def is_suspicious(self, actor: str) -> bool:
        with self._lock:
            return actor in self._suspicious

    def mark_suspicious(self, actor: str):
        with self._lock:
            self._suspicious.add(actor)

    def suspicious_actors(self) -> Set[str]:
        with self._lock:
            return set(self._suspicious)

    def reset_suspicious(self, actor: Optional[str] = None):
        """Clear one actor, or the whole suspicious set."""
        with self._lock:
            if actor is None:
                self._suspicious.clear()
            else:
                self._suspicious.discard(actor)

    # ========================================================================
    # THREAT INTELLIGENCE
    # ========================================================================

    def add_threat_intelligence(self, intel: ThreatIntelligence):
        with self._lock:
            self._threat_intel[intel.ip_address] = intel
        logger.info(
            f"Threat intelligence added for {intel.ip_address} "
            f"(risk_level={intel.risk_level.value}, categories={intel.categories})"
        )

    def get_threat_intelligence(self, ip_address: str) -> Optional[ThreatIntelligence]:
        with self._lock:
            return self._threat_intel.get(ip_address)

    # ========================================================================
    # LOGIN HEURISTICS
    # ========================================================================

    def analyze_login(self, user_id: str, ip_address: str, user_agent: Optional[str] = None,
                      details: Optional[Dict[str, Any]] = None,
                      now: Optional[float] = None) -> List[str]:
        """
        Collect login anomaly signals.

        ``details`` may carry ``country``/``usual_countries`` and
        ``usual_hours`` (local hours 0-23) describing the user's normal
        behaviour.
        """
        details = details or {}
        threats = []

        intel = self.get_threat_intelligence(ip_address)
        if intel is not None and intel.risk_level != Severity.LOW:
            threats.append(f"known_malicious_ip_{intel.risk_level.value}")

        country = details.get("country")
        usual_countries = details.get("usual_countries")
        if country and usual_countries and country not in usual_countries:
            threats.append("unusual_location")

        usual_hours = details.get("usual_hours")
        if usual_hours:
            hour = datetime.fromtimestamp(self._clock() if now is None else now).hour
            if hour not in usual_hours:
                threats.append("unusual_time")

        if user_agent:
            lowered = user_agent.lower()
            if any(marker in lowered for marker in AUTOMATED_TOOL_MARKERS):
                threats.append("automated_tool")
            if len(user_agent) < MIN_USER_AGENT_LENGTH:
                threats.append("suspicious_user_agent")

        if self.is_suspicious(user_id):
            threats.append("suspicious_user")

        return threats

    @staticmethod
    def severity_from_login_threats(threats: List[str]) -> Severity:
        if any(t in ("known_malicious_ip_critical", "known_malicious_ip_high") for t in threats):
            return Severity.HIGH
        if any(t in ("known_malicious_ip_medium", "automated_tool") for t in threats) or len(threats) >= 3:
            return Severity.MEDIUM
        return Severity.LOW


def _round_half_up(value: float) -> int:
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)
