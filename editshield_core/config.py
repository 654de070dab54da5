"""
EditShield Configuration
========================

Configuration surface for the security engine. Every section is a plain
dataclass with secure defaults; ``SecurityConfig.from_env`` overlays values
from the process environment (and an optional ``.env`` file).

Invalid environment values are logged and ignored so that a bad setting
never prevents the engine from starting.

Author: jetgause
Created: 2025-12-14
Version: 1.0.0
"""

import copy
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Pattern, Union

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DirectiveValue = Union[List[str], bool]

# ============================================================================
# DEFAULTS
# ============================================================================

DEFAULT_DIRECTIVES: Dict[str, DirectiveValue] = {
    "default-src": ["'none'"],
    "script-src": ["'self'"],
    "style-src": ["'self'"],
    "img-src": ["'self'", "data:", "https:"],
    "font-src": ["'self'", "https:"],
    "connect-src": ["'self'"],
    "media-src": ["'self'"],
    "object-src": ["'none'"],
    "child-src": ["'none'"],
    "frame-src": ["'none'"],
    "worker-src": ["'self'"],
    "manifest-src": ["'self'"],
    "base-uri": ["'self'"],
    "form-action": ["'self'"],
    "frame-ancestors": ["'none'"],
    "upgrade-insecure-requests": True,
    "block-all-mixed-content": True,
    "require-trusted-types-for": ["'script'"],
    "trusted-types": ["editshield-policy", "default"],
}

DEFAULT_BLOCKED_PATTERNS = [
    r"<script[^>]*>",
    r"javascript:",
    r"on\w+\s*=",
    r"data:text/html",
]

DEFAULT_SUSPICIOUS_PATTERNS = [
    r"<script[^>]*>",
    r"javascript:",
    r"vbscript:",
    r"on\w+\s*=",
    r"expression\s*\(",
    r"@import",
    r"document\.cookie",
    r"document\.write",
    r"eval\s*\(",
    r"setTimeout\s*\(",
    r"setInterval\s*\(",
]

VALID_ENVIRONMENTS = ("development", "production", "test")
XSS_MODES = ("strict", "moderate", "loose")


def compile_patterns(sources: List[str]) -> List[Pattern]:
    """Compile case-insensitive detection patterns."""
    return [re.compile(source, re.IGNORECASE) for source in sources]


def default_directives() -> Dict[str, DirectiveValue]:
    return copy.deepcopy(DEFAULT_DIRECTIVES)


# ============================================================================
# SECTIONS
# ============================================================================

@dataclass
class XSSConfig:
    """HTML sanitization settings."""
    enabled: bool = True
    mode: str = "strict"  # strict, moderate, loose
    allowed_tags: List[str] = field(
        default_factory=lambda: ["b", "i", "em", "strong", "a", "p", "br"]
    )
    allowed_attributes: List[str] = field(default_factory=lambda: ["href", "target"])

    # Caller-supplied function; always wins over the sanitizer capability
    custom_sanitizer: Optional[Callable[[str], str]] = None
    # Object implementing ``sanitize(html, options)``; strip-all when None
    sanitizer: Optional[Any] = None


@dataclass
class CSPConfig:
    """Content Security Policy settings."""
    enabled: bool = True
    enforce_mode: bool = True
    directives: Dict[str, DirectiveValue] = field(default_factory=default_directives)
    use_nonces: bool = True
    use_hashes: bool = True
    report_uri: Optional[str] = "/api/csp-report"
    report_to: Optional[str] = None
    environment: str = "production"  # development, production, test

    # Nonce lifecycle (seconds)
    nonce_ttl: float = 300.0
    rotation_interval: float = 300.0
    nonce_bytes: int = 32


@dataclass
class RateLimitConfig:
    """Fixed-window rate limiting."""
    enabled: bool = True
    max_requests: int = 100
    window_ms: int = 15 * 60 * 1000

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000.0


@dataclass
class InputValidationConfig:
    """Checks applied to every untrusted editor value."""
    enabled: bool = True
    max_length: int = 10000
    allowed_characters: Optional[Pattern] = None
    blocked_patterns: List[Pattern] = field(
        default_factory=lambda: compile_patterns(DEFAULT_BLOCKED_PATTERNS)
    )


@dataclass
class ThreatDetectionConfig:
    """Pattern detection, alerting and risk thresholds."""
    enabled: bool = True
    suspicious_patterns: List[Pattern] = field(
        default_factory=lambda: compile_patterns(DEFAULT_SUSPICIOUS_PATTERNS)
    )
    alert_threshold: int = 3
    alert_window_seconds: float = 3600.0
    history_limit: int = 100

    # Risk scoring
    high_risk_threshold: int = 70
    critical_risk_threshold: int = 90

    # Login monitoring
    max_login_attempts: int = 5
    login_window_ms: int = 15 * 60 * 1000


@dataclass
class ReporterConfig:
    """CSP violation pipeline and report transport."""
    endpoint: Optional[str] = None
    max_reports: int = 1000
    reporting_window_ms: int = 60 * 1000
    aggregate_reports: bool = True
    enable_metrics: bool = True
    metrics_interval_ms: int = 5 * 60 * 1000

    # Alert thresholds
    violations_per_minute: int = 10
    unique_violations_per_hour: int = 5
    critical_directives: List[str] = field(
        default_factory=lambda: ["script-src", "object-src", "base-uri"]
    )
    anomaly_min_samples: int = 100
    anomaly_factor: float = 3.0
    alert_history_limit: int = 100

    # Resilience
    failure_threshold: int = 5
    circuit_timeout_ms: int = 60 * 1000
    max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 10 * 1000
    request_timeout: float = 10.0


@dataclass
class SecurityConfig:
    """Top-level engine configuration."""
    xss: XSSConfig = field(default_factory=XSSConfig)
    csp: CSPConfig = field(default_factory=CSPConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    input_validation: InputValidationConfig = field(default_factory=InputValidationConfig)
    threat_detection: ThreatDetectionConfig = field(default_factory=ThreatDetectionConfig)
    reporter: ReporterConfig = field(default_factory=ReporterConfig)
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, prefix: str = "EDITSHIELD_") -> "SecurityConfig":
        """
        Build a configuration from environment variables.

        Recognised variables (all optional, prefixed with ``EDITSHIELD_``):
        ENVIRONMENT, CSP_ENFORCE, CSP_REPORT_URI, REPORT_ENDPOINT,
        RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_MS, MAX_INPUT_LENGTH,
        ALERT_THRESHOLD, XSS_MODE, LOG_LEVEL, LOG_JSON, LOG_FILE.
        """
        load_dotenv(env_file)
        config = cls()

        environment = os.getenv(f"{prefix}ENVIRONMENT")
        if environment:
            environment = environment.lower()
            if environment in VALID_ENVIRONMENTS:
                config.csp.environment = environment
            else:
                logger.warning(f"Ignoring unknown environment '{environment}'")

        config.csp.enforce_mode = _env_bool(f"{prefix}CSP_ENFORCE", config.csp.enforce_mode)
        config.csp.report_uri = os.getenv(f"{prefix}CSP_REPORT_URI", config.csp.report_uri)
        config.reporter.endpoint = os.getenv(f"{prefix}REPORT_ENDPOINT", config.reporter.endpoint)

        config.rate_limit.max_requests = _env_int(
            f"{prefix}RATE_LIMIT_MAX_REQUESTS", config.rate_limit.max_requests
        )
        config.rate_limit.window_ms = _env_int(
            f"{prefix}RATE_LIMIT_WINDOW_MS", config.rate_limit.window_ms
        )
        config.input_validation.max_length = _env_int(
            f"{prefix}MAX_INPUT_LENGTH", config.input_validation.max_length
        )
        config.threat_detection.alert_threshold = _env_int(
            f"{prefix}ALERT_THRESHOLD", config.threat_detection.alert_threshold
        )

        mode = os.getenv(f"{prefix}XSS_MODE")
        if mode:
            if mode.lower() in XSS_MODES:
                config.xss.mode = mode.lower()
            else:
                logger.warning(f"Ignoring unknown XSS mode '{mode}'")

        config.log_level = os.getenv(f"{prefix}LOG_LEVEL", config.log_level).upper()
        config.log_json = _env_bool(f"{prefix}LOG_JSON", config.log_json)
        config.log_file = os.getenv(f"{prefix}LOG_FILE") or config.log_file
        return config


# ============================================================================
# HELPERS
# ============================================================================

def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {raw!r}, using {default}")
        return default
    if value <= 0:
        logger.warning(f"{name} must be positive, using {default}")
        return default
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")
