"""
Report Transport
================

Delivers batched CSP violation reports to an HTTP collector.

A single report is posted as ``application/csp-report``, batches as
``application/json``; both carry ``{"reports": [...], "metadata": {...}}``.
Any network error or non-2xx response raises ``TransportError``.

Author: jetgause
Created: 2025-12-14
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

from editshield_core.exceptions import TransportError
from editshield_core.models import CSPViolation

logger = logging.getLogger(__name__)

REPORTER_USER_AGENT = "EditShield-CSP-Reporter/1.0"


class ReportTransport(ABC):
    """Capability interface for report delivery."""

    @abstractmethod
    def send(self, reports: List[CSPViolation], metadata: Dict[str, Any]):
        """Deliver reports; raise ``TransportError`` on failure."""


class HttpReportTransport(ReportTransport):
    """POSTs violation reports with ``requests``."""

    def __init__(self, endpoint: str, timeout: float = 10.0,
                 auth_token: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.auth_token = auth_token
        self.session = session or requests.Session()

    def build_payload(self, reports: List[CSPViolation], metadata: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "reports": [report.to_dict() for report in reports],
            "metadata": metadata,
        }

    def send(self, reports: List[CSPViolation], metadata: Dict[str, Any]):
        content_type = "application/csp-report" if len(reports) == 1 else "application/json"
        headers = {"Content-Type": content_type, "User-Agent": REPORTER_USER_AGENT}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        try:
            response = self.session.post(
                self.endpoint,
                json=self.build_payload(reports, metadata),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"Report delivery to {self.endpoint} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise TransportError(
                f"HTTP {response.status_code}: {response.reason}",
                status_code=response.status_code,
            )
        logger.debug(f"Delivered {len(reports)} report(s) to {self.endpoint}")

    def close(self):
        self.session.close()
