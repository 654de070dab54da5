"""
FastAPI Integration
===================

Mountable components for serving EditShield policies from a FastAPI app:
- ``ResponseHeaderPolicySink``: policy sink holding the active CSP header
- ``CSPHeaderMiddleware``: adds the CSP header and hardening headers to responses
- ``create_report_router``: endpoint receiving browser CSP violation reports

Usage:
    sink = ResponseHeaderPolicySink()
    manager = SecurityManager(config, policy_sink=sink)
    app.add_middleware(CSPHeaderMiddleware, sink=sink)
    app.include_router(create_report_router(manager))

Author: jetgause
Created: 2025-12-14
"""

import json
import logging
import threading
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from editshield_core.csp_engine import PolicySink, policy_header_name

logger = logging.getLogger(__name__)

REPORT_CONTENT_TYPES = ("application/csp-report", "application/json", "application/reports+json")

HARDENING_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


class ResponseHeaderPolicySink(PolicySink):
    """Keeps the compiled policy so middleware can attach it to responses."""

    def __init__(self):
        self._header: Optional[Dict[str, str]] = None
        self._lock = threading.Lock()

    def apply_policy(self, policy: str, enforce: bool):
        with self._lock:
            self._header = {policy_header_name(enforce): policy}

    def remove_policy(self):
        with self._lock:
            self._header = None

    def headers(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._header or {})


class CSPHeaderMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware adding the active CSP header to every response."""

    def __init__(self, app, sink: ResponseHeaderPolicySink, hardening_headers: bool = True):
        super().__init__(app)
        self.sink = sink
        self.hardening_headers = hardening_headers

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        if self.hardening_headers:
            for name, value in HARDENING_HEADERS.items():
                response.headers.setdefault(name, value)
        response.headers.update(self.sink.headers())

        return response


# ============================================================================
# REPORT ENDPOINT
# ============================================================================

class CSPReportBody(BaseModel):
    """Browser ``csp-report`` object (kebab-case keys)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    document_uri: Optional[str] = Field(default=None, alias="document-uri")
    blocked_uri: Optional[str] = Field(default=None, alias="blocked-uri")
    violated_directive: Optional[str] = Field(default=None, alias="violated-directive")
    effective_directive: Optional[str] = Field(default=None, alias="effective-directive")
    original_policy: Optional[str] = Field(default=None, alias="original-policy")
    referrer: Optional[str] = None
    status_code: Optional[int] = Field(default=None, alias="status-code")
    source_file: Optional[str] = Field(default=None, alias="source-file")
    line_number: Optional[int] = Field(default=None, alias="line-number")
    column_number: Optional[int] = Field(default=None, alias="column-number")
    script_sample: Optional[str] = Field(default=None, alias="script-sample")


class CSPReportEnvelope(BaseModel):
    csp_report: CSPReportBody = Field(alias="csp-report")


def _normalize(payload: Any) -> Any:
    """Validate legacy ``csp-report`` bodies; other forms pass through."""
    if isinstance(payload, dict) and "csp-report" in payload:
        envelope = CSPReportEnvelope.model_validate(payload)
        return {"csp-report": envelope.csp_report.model_dump(by_alias=True, exclude_none=True)}
    return payload


def create_report_router(handler, path: str = "/api/csp-report") -> APIRouter:
    """
    Build a router receiving CSP violation reports.

    Args:
        handler: Object with ``ingest_report(payload, user_agent)``, such as a
            ``CSPViolationPipeline`` or ``SecurityManager``
        path: Report endpoint path; should match the policy's ``report-uri``

    Returns:
        APIRouter answering 204 on success and 400 for malformed reports
    """
    router = APIRouter()

    @router.post(path, status_code=status.HTTP_204_NO_CONTENT)
    async def receive_csp_report(request: Request) -> Response:
        content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type not in REPORT_CONTENT_TYPES:
            raise HTTPException(
                status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
                detail=f"Unsupported report content type: {content_type or 'none'}",
            )

        body = await request.body()
        try:
            payload = _normalize(json.loads(body))
            handler.ingest_report(payload, user_agent=request.headers.get("user-agent"))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Rejected malformed CSP report: {e}")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed CSP report")

        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return router
