"""
Input Validation Gate
=====================

Validates untrusted editor values before they are accepted:
- Length and allowed-character checks
- Blocked-pattern detection (reported as ``blocked_pattern`` threats)
- Sanitization through the configured capability, with strip-all fallback
- Suspicious-pattern threat detection over the raw input
- Optional per-source rate limiting

Validation failures are returned as data; ``validate`` does not raise.

Author: jetgause
Created: 2025-12-14
Version: 1.0.0
"""

import logging
import time
from typing import Any, Callable, Optional

from editshield_core.config import InputValidationConfig, ThreatDetectionConfig, XSSConfig
from editshield_core.models import Severity, ThreatEvent, ThreatKind, ValidationResult
from editshield_core.patterns import PatternClassifier
from editshield_core.rate_limiter import RateLimiter
from editshield_core.sanitizer import (
    HtmlSanitizer,
    StripAllSanitizer,
    options_for_mode,
    strip_markup,
)

logger = logging.getLogger(__name__)

BLOCKED_PATTERN_ERROR = "Input contains blocked pattern"
SECURITY_THREAT_ERROR = "Input contains security threats"
DISALLOWED_CHARACTERS_ERROR = "Input contains disallowed characters"
INVALID_TYPE_ERROR = "Input must be a UTF-8 string"
RATE_LIMIT_ERROR = "Rate limit exceeded"

BLOCKED_CONTEXT_CHARS = 100
THREAT_CONTEXT_CHARS = 200


class InputValidationGate:
    """Runs the validation pipeline for a single untrusted value."""

    def __init__(self, config: Optional[InputValidationConfig] = None,
                 xss: Optional[XSSConfig] = None,
                 threat_detection: Optional[ThreatDetectionConfig] = None,
                 classifier: Optional[PatternClassifier] = None,
                 sanitizer: Optional[HtmlSanitizer] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or InputValidationConfig()
        self.xss = xss or XSSConfig()
        self.threat_detection = threat_detection or ThreatDetectionConfig()
        self.classifier = classifier or PatternClassifier(self.threat_detection.suspicious_patterns)
        self.sanitizer = sanitizer or self.xss.sanitizer or StripAllSanitizer()
        self.rate_limiter = rate_limiter
        self._clock = clock

    def validate(self, value: Any, context: Optional[str] = None,
                 source: Optional[str] = None) -> ValidationResult:
        """
        Validate an untrusted value.

        Args:
            value: Raw input; ``str`` or UTF-8 ``bytes``
            context: Free-form label of where the value came from
            source: Actor identifier, used for rate limiting and threat attribution

        Returns:
            ValidationResult with errors, threats and the sanitized value
        """
        if not self.config.enabled:
            return ValidationResult(is_valid=True, sanitized_value=value)

        text = self._coerce(value)
        if text is None:
            return self._invalid_input(value, context, source)

        result = ValidationResult()
        now = self._clock()
        sample = text[:self.classifier.max_scan_length]

        if len(text) > self.config.max_length:
            result.add_error(f"Input exceeds maximum length of {self.config.max_length} characters")

        allowed = self.config.allowed_characters
        if allowed is not None and not allowed.search(text):
            result.add_error(DISALLOWED_CHARACTERS_ERROR)

        if source and self.rate_limiter is not None and not self.rate_limiter.allow(source):
            result.add_error(RATE_LIMIT_ERROR)

        for pattern in self.config.blocked_patterns:
            if pattern.search(sample):
                result.add_error(BLOCKED_PATTERN_ERROR)
                result.threats.append(ThreatEvent(
                    type=ThreatKind.BLOCKED_PATTERN,
                    severity=Severity.HIGH,
                    timestamp=now,
                    source=source,
                    details={
                        "pattern": pattern.pattern,
                        "input": text[:BLOCKED_CONTEXT_CHARS],
                        "context": context,
                    },
                ))

        result.sanitized_value = self.sanitize_html(text) if self.xss.enabled else text

        if self.threat_detection.enabled:
            threats = self.detect_threats(text, context, source, now)
            result.threats.extend(threats)
            if any(t.severity in (Severity.HIGH, Severity.CRITICAL) for t in threats):
                result.add_error(SECURITY_THREAT_ERROR)

        if result.threats:
            logger.warning(
                f"Validation found {len(result.threats)} threat(s) "
                f"(context={context}, source={source})"
            )
        return result

    def detect_threats(self, text: str, context: Optional[str] = None,
                       source: Optional[str] = None, now: Optional[float] = None):
        """Classify ``text`` against the suspicious-pattern table."""
        if now is None:
            now = self._clock()
        threats = []
        for match in self.classifier.classify(text):
            threats.append(ThreatEvent(
                type=ThreatKind.SUSPICIOUS_PATTERN,
                severity=self.classifier.severity_of(match.pattern.source, text),
                timestamp=now,
                source=source,
                details={
                    "pattern": match.pattern.source,
                    "matches": match.matches[:self.classifier.max_matches],
                    "input": text[:THREAT_CONTEXT_CHARS],
                    "context": context,
                },
            ))
        return threats

    def sanitize_html(self, html: str) -> str:
        """Sanitize through the custom function or sanitizer capability.

        Any failure falls back to stripping all markup.
        """
        if not self.xss.enabled:
            return html

        try:
            if self.xss.custom_sanitizer is not None:
                cleaned = self.xss.custom_sanitizer(html)
            else:
                options = options_for_mode(
                    self.xss.mode, self.xss.allowed_tags, self.xss.allowed_attributes
                )
                cleaned = self.sanitizer.sanitize(html, options)
        except Exception as e:
            logger.error(f"Sanitizer failed, falling back to plain text: {e}")
            return strip_markup(html)

        if not isinstance(cleaned, str):
            logger.error(f"Sanitizer returned {type(cleaned).__name__}, falling back to plain text")
            return strip_markup(html)
        return cleaned

    @staticmethod
    def _coerce(value: Any) -> Optional[str]:
        if isinstance(value, str):
            return value
        if isinstance(value, (bytes, bytearray)):
            try:
                return bytes(value).decode("utf-8")
            except UnicodeDecodeError:
                return None
        return None

    def _invalid_input(self, value: Any, context: Optional[str],
                       source: Optional[str]) -> ValidationResult:
        result = ValidationResult(is_valid=False, errors=[INVALID_TYPE_ERROR])
        result.threats.append(ThreatEvent(
            type=ThreatKind.INVALID_INPUT,
            severity=Severity.CRITICAL,
            timestamp=self._clock(),
            source=source,
            details={"received_type": type(value).__name__, "context": context},
        ))
        logger.warning(f"Rejected non-text input of type {type(value).__name__}")
        return result
