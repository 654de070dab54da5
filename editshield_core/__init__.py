"""
EditShield Core
===============

Embeddable security engine for in-page content editors: input validation,
threat detection and risk scoring, Content Security Policy generation,
header guarding and violation reporting.

Author: jetgause
Version: 1.0.0
"""

__version__ = "1.0.0"
__all__ = [
    "SecurityManager",
    "SecurityConfig",
    "EventBus",
    "CSPPolicyEngine",
    "CSPHeaderGuard",
    "CSPViolationPipeline",
    "InputValidationGate",
    "PatternClassifier",
    "RateLimiter",
    "RiskScorer",
    "SecurityMonitor",
    "ThreatLedger",
    "configure_logging",
    "models",
]

from editshield_core import models
from editshield_core.config import SecurityConfig
from editshield_core.csp_engine import CSPPolicyEngine
from editshield_core.csp_guard import CSPHeaderGuard
from editshield_core.csp_reporter import CSPViolationPipeline
from editshield_core.events import EventBus
from editshield_core.ledger import ThreatLedger
from editshield_core.logging_setup import configure_logging
from editshield_core.manager import SecurityManager
from editshield_core.monitor import SecurityMonitor
from editshield_core.patterns import PatternClassifier
from editshield_core.rate_limiter import RateLimiter
from editshield_core.risk import RiskScorer
from editshield_core.validation import InputValidationGate
