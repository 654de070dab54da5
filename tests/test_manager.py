"""
Security Manager Test Suite
===========================

End-to-end tests for the manager facade:
- Input validation with threat recording
- Rate limiting through the shared limiter
- Scanning nodes added to the editing surface
- CSP violation handling and severity assessment
- Security reports, configuration checks and teardown

Author: jetgause
Created: 2025-12-14
"""

from unittest.mock import patch

import pytest

from editshield_core import events
from editshield_core.config import CSPConfig, RateLimitConfig, SecurityConfig, XSSConfig
from editshield_core.csp_engine import InMemoryPolicySink
from editshield_core.exceptions import ConfigurationError
from editshield_core.manager import SecurityManager, assess_csp_violation_severity
from editshield_core.models import CSPViolation, NodeDescriptor, Severity, ThreatKind
from editshield_core.sanitizer import BleachSanitizer
from editshield_core.validation import BLOCKED_PATTERN_ERROR, RATE_LIMIT_ERROR


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return InMemoryPolicySink()


@pytest.fixture
def manager(clock, sink):
    manager = SecurityManager(policy_sink=sink, clock=clock, start_background_tasks=False)
    yield manager
    manager.destroy()


def make_manager(clock, config=None, **kwargs):
    return SecurityManager(config, clock=clock, start_background_tasks=False, **kwargs)


# ============================================================================
# INPUT TESTS
# ============================================================================

class TestValidateInput:
    """Test validation with threat recording."""

    def test_script_input_is_recorded(self, manager):
        """Threats found during validation are scored and kept in history."""
        result = manager.validate_input("<script>alert(1)</script>", context="title", source="user-1")

        assert not result.is_valid
        assert BLOCKED_PATTERN_ERROR in result.errors
        assert result.sanitized_value == ""
        assert result.threats
        assert all(t.risk_score > 0 for t in result.threats)
        assert manager.get_threat_history("user-1") == result.threats
        assert manager.scorer.is_suspicious("user-1")

    def test_clean_input(self, manager):
        """Clean input records nothing."""
        result = manager.validate_input("Quarterly report", source="user-1")
        assert result.is_valid
        assert manager.get_threat_history() == []

    def test_rate_limit_threat_recorded_once(self, clock):
        """Limiter threats go to history but not into the result."""
        config = SecurityConfig(rate_limit=RateLimitConfig(max_requests=2))
        manager = make_manager(clock, config)

        manager.validate_input("a", source="u1")
        manager.validate_input("b", source="u1")
        result = manager.validate_input("c", source="u1")

        assert RATE_LIMIT_ERROR in result.errors
        assert result.threats == []
        history = manager.get_threat_history("u1")
        assert [t.type for t in history] == [ThreatKind.RATE_LIMIT_EXCEEDED]
        assert history[0].details == {"identifier": "u1", "count": 2, "max_requests": 2}
        manager.destroy()

    def test_check_rate_limit(self, clock):
        """Direct limiter checks share the same windows."""
        manager = make_manager(clock, SecurityConfig(rate_limit=RateLimitConfig(max_requests=1)))
        assert manager.check_rate_limit("u2")
        assert not manager.check_rate_limit("u2")
        manager.destroy()

    def test_sanitize_html_strips_by_default(self, manager):
        """Without a sanitizer all markup is removed."""
        assert manager.sanitize_html("<b>bold</b> text") == "bold text"

    def test_clear_threat_history(self, manager):
        """History can be cleared."""
        manager.validate_input("<script>", source="user-1")
        manager.clear_threat_history()
        assert manager.get_threat_history() == []


# ============================================================================
# NODE SCANNING TESTS
# ============================================================================

class TestScanAddedNode:
    """Test scanning of nodes inserted into the editing surface."""

    def test_suspicious_scripts_and_links(self, manager):
        """Dangerous scripts and links anywhere in the subtree are reported."""
        tree = NodeDescriptor("div", children=[
            NodeDescriptor("script", text="eval(atob('YWxlcnQoMSk='))"),
            NodeDescriptor("script", attributes={"src": " JaVaScript:alert(1)"}),
            NodeDescriptor("script", attributes={"src": "https://cdn.example.com/app.js"}),
            NodeDescriptor("p", children=[
                NodeDescriptor("a", attributes={"href": "java\tscript:alert(1)"}),
                NodeDescriptor("a", attributes={"href": "https://login.evil.com/reset"}),
                NodeDescriptor("a", attributes={"href": "http://[::1"}),
                NodeDescriptor("a", attributes={"href": "/docs/intro"}),
                NodeDescriptor("a", attributes={"href": "https://example.com/help"}),
            ]),
        ])

        found = manager.scan_added_node(tree)

        assert [t.type for t in found] == [
            ThreatKind.SUSPICIOUS_SCRIPT,
            ThreatKind.SUSPICIOUS_SCRIPT,
            ThreatKind.SUSPICIOUS_LINK,
            ThreatKind.SUSPICIOUS_LINK,
            ThreatKind.SUSPICIOUS_LINK,
        ]
        assert found[0].severity == Severity.HIGH
        assert found[1].details["src"] == " JaVaScript:alert(1)"
        assert found[2].severity == Severity.MEDIUM
        assert found[3].details == {"href": "https://login.evil.com/reset"}
        assert len(manager.get_threat_history()) == 5

    def test_clean_node(self, manager):
        """Ordinary content reports nothing."""
        tree = NodeDescriptor("p", text="hello", children=[
            NodeDescriptor("a", attributes={"href": "https://example.com"}),
            NodeDescriptor("script", text="console.log('ready')"),
        ])
        assert manager.scan_added_node(tree) == []


# ============================================================================
# CSP TESTS
# ============================================================================

class TestCSPHandling:
    """Test violation handling and CSP configuration."""

    @pytest.mark.parametrize("directive,blocked,expected", [
        ("script-src", "javascript:alert(1)", Severity.CRITICAL),
        ("script-src-elem", "data:text/html,<b>", Severity.CRITICAL),
        ("object-src", "https://plugins.example.com", Severity.HIGH),
        ("base-uri", "https://other.example.com", Severity.HIGH),
        ("script-src-elem", "inline", Severity.HIGH),
        ("style-src-attr", "inline", Severity.MEDIUM),
        ("img-src", "https://images.example.com/x.png", Severity.MEDIUM),
        ("font-src", "data", Severity.LOW),
    ])
    def test_violation_severity(self, directive, blocked, expected):
        """Severity follows the directive and blocked URI."""
        violation = CSPViolation(violated_directive=directive, blocked_uri=blocked)
        assert assess_csp_violation_severity(violation) == expected

    def test_handle_violation(self, manager):
        """Violations reach the pipeline and the threat history."""
        violation = CSPViolation(
            violated_directive="script-src",
            blocked_uri="inline",
            source_file="https://editor.example.com/app.js",
            sample="alert(1)",
        )

        threat = manager.handle_csp_violation(violation)

        assert threat.type == ThreatKind.CSP_VIOLATION
        assert threat.severity == Severity.HIGH
        assert threat.details == {
            "violated_directive": "script-src",
            "blocked_uri": "inline",
            "source_file": "https://editor.example.com/app.js",
            "sample": "alert(1)",
        }
        assert len(manager.csp_reporter.get_violations()) == 1
        assert manager.get_threat_history() == [threat]

    def test_ingest_report(self, manager):
        """Report bodies are parsed and every violation handled."""
        parsed = manager.ingest_report({"csp-report": {
            "document-uri": "https://editor.example.com/doc/1",
            "blocked-uri": "https://evil.example.net/x.js",
            "violated-directive": "script-src-elem",
        }})
        assert len(parsed) == 1
        assert [t.type for t in manager.get_threat_history()] == [ThreatKind.CSP_VIOLATION]

    def test_ingest_malformed_report(self, manager):
        """Malformed bodies raise ValueError and record nothing."""
        with pytest.raises(ValueError):
            manager.ingest_report({"hello": "world"})
        assert manager.get_threat_history() == []

    def test_policy_applied_on_construction(self, manager, sink):
        """The policy is installed when the manager is built."""
        assert sink.policy == manager.csp_engine.last_policy
        nonces = manager.current_nonces()
        assert f"'nonce-{nonces['script']}'" in sink.policy

    def test_update_csp_config(self, manager, sink):
        """CSP changes are re-applied to the sink."""
        manager.update_csp_config(report_uri="/security/csp")
        assert manager.config.csp.report_uri == "/security/csp"
        assert sink.policy.endswith("report-uri /security/csp")

    def test_csp_disabled(self, clock):
        """Without CSP there are no nonces and no config updates."""
        manager = make_manager(clock, SecurityConfig(csp=CSPConfig(enabled=False)))
        assert manager.csp_engine is None
        assert manager.current_nonces() is None
        with pytest.raises(ConfigurationError) as exc_info:
            manager.update_csp_config(report_uri="/x")
        assert exc_info.value.field_name == "csp"
        manager.destroy()


# ============================================================================
# REPORT AND CONFIG CHECK TESTS
# ============================================================================

class TestReports:
    """Test security reports and configuration checks."""

    def test_fresh_manager_is_secure(self, manager):
        """No threats means a secure status."""
        report = manager.generate_security_report()
        assert report["security_status"] == "secure"
        assert report["threat_summary"] == {
            "total_threats": 0, "critical_threats": 0, "recent_threats": 0,
        }
        assert report["recommendations"] == []

    def test_high_severity_threats_are_critical(self, manager):
        """High or critical threats make the status critical."""
        manager.validate_input("<script>alert(1)</script>", source="user-1")
        report = manager.generate_security_report()
        assert report["security_status"] == "critical"
        assert "Address critical security threats immediately" in report["recommendations"]
        assert report["threat_summary"]["critical_threats"] >= 1

    def test_many_recent_threats_warn(self, manager):
        """More than ten recent low threats is a warning."""
        for _ in range(11):
            manager.validate_input('document.write("x")')
        report = manager.generate_security_report()
        assert report["security_status"] == "warning"
        assert report["threat_summary"]["recent_threats"] == 11

    def test_disabled_csp_warns(self, clock):
        """Running without CSP is flagged."""
        manager = make_manager(clock, SecurityConfig(csp=CSPConfig(enabled=False)))
        report = manager.generate_security_report()
        assert report["security_status"] == "warning"
        assert "Enable Content Security Policy for better protection" in report["recommendations"]
        manager.destroy()

    def test_default_config_is_valid(self, manager):
        """Defaults validate with only the sanitizer warning."""
        result = manager.validate_security_config()
        assert result["is_valid"]
        assert result["errors"] == []
        assert result["warnings"] == ["No HTML sanitizer configured - all markup will be stripped"]

    def test_loose_mode_warning(self, clock):
        """Loose sanitization is a warning."""
        config = SecurityConfig(xss=XSSConfig(mode="loose", sanitizer=BleachSanitizer()))
        manager = make_manager(clock, config)
        result = manager.validate_security_config()
        assert result["warnings"] == ["XSS protection is in loose mode - consider stricter settings"]
        manager.destroy()

    def test_unsafe_production_directive_is_an_error(self, clock):
        """Production policies must not allow eval."""
        config = SecurityConfig(csp=CSPConfig(directives={"script-src": ["'self'", "'unsafe-eval'"]}))
        manager = make_manager(clock, config)
        result = manager.validate_security_config()
        assert not result["is_valid"]
        assert "'unsafe-eval' should not be used in script-src for production" in result["errors"]
        manager.destroy()


# ============================================================================
# TEARDOWN TESTS
# ============================================================================

class TestDestroy:
    """Test teardown."""

    def test_destroy_releases_everything(self, clock, sink):
        """Destroy removes the policy and clears state; repeat calls are harmless."""
        manager = make_manager(clock, policy_sink=sink)
        manager.validate_input("<script>", source="user-1")

        manager.destroy()
        manager.destroy()

        assert sink.policy is None
        assert manager.get_threat_history() == []
        assert not manager.scorer.is_suspicious("user-1")

    def test_critical_events_are_published(self, clock):
        """Critical threats reach subscribers on the shared bus."""
        manager = make_manager(clock)
        received = []
        manager.event_bus.on(events.CRITICAL_EVENT, received.append)
        manager.validate_input(42)
        assert received[0]["threat"].type == ThreatKind.INVALID_INPUT
        manager.destroy()


# ============================================================================
# LOGGING SETUP TESTS
# ============================================================================

class TestLoggingSetup:
    """Test the opt-in logging configuration."""

    def test_logging_configured_from_config(self, clock, tmp_path):
        """setup_logging applies the configured level, format and file."""
        config = SecurityConfig(log_level="DEBUG", log_json=True, log_file=str(tmp_path / "es.log"))
        with patch("editshield_core.manager.configure_logging") as configure:
            manager = make_manager(clock, config, setup_logging=True)
        configure.assert_called_once_with("DEBUG", json_format=True, log_file=str(tmp_path / "es.log"))
        manager.destroy()

    def test_logging_left_to_host_by_default(self, clock):
        """Without setup_logging no handlers are installed."""
        with patch("editshield_core.manager.configure_logging") as configure:
            manager = make_manager(clock)
        configure.assert_not_called()
        manager.destroy()
