"""
EditShield Exceptions
=====================

Exception hierarchy for the security engine.

Validation failures are never raised; they are returned as
``ValidationResult`` data. Only configuration, transport, circuit and
sanitizer failures are modelled as exceptions, and the engine catches the
latter three internally.

Author: jetgause
Created: 2025-12-14
"""

from typing import Optional


class EditShieldError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(EditShieldError):
    """Invalid directive, value or setting supplied at setup time."""

    def __init__(self, message: str, field_name: Optional[str] = None):
        super().__init__(message)
        self.field_name = field_name


class TransportError(EditShieldError):
    """Report delivery failed (network error or non-2xx response)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CircuitOpenError(EditShieldError):
    """Raised when a call is rejected because the circuit breaker is open."""

    def __init__(self, message: str = "Circuit breaker is OPEN", retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class SanitizerError(EditShieldError):
    """The HTML sanitizer capability failed on a given input."""
