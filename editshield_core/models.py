"""
EditShield Data Models
======================

Shared data structures for the security engine:
- Severity and threat kind enumerations
- Threat events and validation results
- Rate-limit windows and nonce stores
- CSP violation reports, aggregates and alerts
- Threat intelligence records and DOM node descriptors

Author: jetgause
Created: 2025-12-14
Version: 1.0.0
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from dataclasses_json import LetterCase, dataclass_json


class Severity(str, Enum):
    """Threat severity levels, ordered from least to most severe."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def max(cls, *levels: "Severity") -> "Severity":
        """Return the most severe of the given levels (LOW when empty)."""
        worst = cls.LOW
        for level in levels:
            if level.rank > worst.rank:
                worst = level
        return worst


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ThreatKind(str, Enum):
    """Classified threat types produced by validation and monitoring."""
    # Input validation / DOM scanning
    BLOCKED_PATTERN = "blocked_pattern"
    SUSPICIOUS_PATTERN = "suspicious_pattern"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    CSP_VIOLATION = "csp_violation"
    SUSPICIOUS_SCRIPT = "suspicious_script"
    SUSPICIOUS_LINK = "suspicious_link"
    INVALID_INPUT = "invalid_input"

    # Authentication and API monitoring
    AUTH_FAILURE = "auth_failure"
    SUSPICIOUS_LOGIN = "suspicious_login"
    BRUTE_FORCE = "brute_force"
    SQL_INJECTION = "sql_injection"
    XSS_ATTEMPT = "xss_attempt"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    DATA_EXFILTRATION = "data_exfiltration"
    RATE_LIMIT_VIOLATION = "rate_limit_violation"
    MALICIOUS_FILE_UPLOAD = "malicious_file_upload"
    SUSPICIOUS_API_USAGE = "suspicious_api_usage"
    ACCOUNT_TAKEOVER = "account_takeover"
    FRAUD_ATTEMPT = "fraud_attempt"


@dataclass_json
@dataclass(frozen=True)
class ThreatEvent:
    """A classified record of suspicious input or activity.

    Instances are immutable; the monitor attaches a risk score by creating a
    copy with ``dataclasses.replace``.
    """
    type: ThreatKind
    severity: Severity
    timestamp: float
    source: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    risk_score: int = 0
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class ValidationResult:
    """Outcome of a single input validation call."""
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    sanitized_value: Optional[str] = None
    threats: List[ThreatEvent] = field(default_factory=list)

    def add_error(self, message: str):
        """Record an error once; repeated messages are collapsed."""
        self.is_valid = False
        if message not in self.errors:
            self.errors.append(message)


@dataclass
class RateWindow:
    """Fixed-window counter for one identifier."""
    count: int
    reset_at: float


@dataclass
class NonceStore:
    """Script/style nonce pair issued to one session."""
    script_nonce: str
    style_nonce: str
    created_at: float
    valid: bool = True


@dataclass_json(letter_case=LetterCase.CAMEL)
@dataclass
class CSPViolation:
    """One raw browser CSP violation report."""
    document_uri: str = ""
    blocked_uri: str = ""
    violated_directive: str = ""
    original_policy: str = ""
    referrer: Optional[str] = None
    status_code: Optional[int] = None
    source_file: Optional[str] = None
    line_number: Optional[int] = None
    column_number: Optional[int] = None
    sample: Optional[str] = None
    timestamp: float = 0.0
    user_agent: str = ""


@dataclass
class AggregatedViolation:
    """Roll-up of violations sharing a (directive, blocked URI) key."""
    violated_directive: str
    blocked_uri: str
    count: int = 0
    first_seen: float = 0.0
    last_seen: float = 0.0
    sources: List[str] = field(default_factory=list)
    user_agents: Set[str] = field(default_factory=set)
    samples: List[str] = field(default_factory=list)

    def to_report_dict(self) -> Dict[str, Any]:
        return {
            "violatedDirective": self.violated_directive,
            "blockedUri": self.blocked_uri,
            "count": self.count,
            "firstSeen": self.first_seen,
            "lastSeen": self.last_seen,
            "sources": list(self.sources),
            "userAgents": sorted(self.user_agents),
            "samples": list(self.samples),
        }


class AlertType(str, Enum):
    THRESHOLD = "threshold"
    CRITICAL = "critical"
    ANOMALY = "anomaly"


@dataclass
class SecurityAlert:
    """Derived alert raised by the violation pipeline."""
    type: AlertType
    severity: Severity
    message: str
    data: Dict[str, Any]
    timestamp: float


@dataclass
class ThreatIntelligence:
    """Known reputation for a source IP address."""
    ip_address: str
    risk_level: Severity
    categories: List[str] = field(default_factory=list)
    last_seen: float = 0.0
    source: str = "manual"


@dataclass
class NodeDescriptor:
    """Host-supplied description of a DOM node added to the editing surface."""
    tag: str
    attributes: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    children: List["NodeDescriptor"] = field(default_factory=list)

    def iter_tree(self):
        """Yield this node and all descendants depth-first."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))
