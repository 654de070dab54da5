"""
CSP Policy Engine Test Suite
============================

Tests for policy compilation and lifecycle:
- Secure defaults and environment relaxations
- Nonce issuance, expiry and rotation
- Content hashes and 'unsafe-inline' stripping
- Policy sink application without stacking
- Guarded directive updates and teardown

Author: jetgause
Created: 2025-12-14
"""

import base64
import hashlib
import re
from unittest.mock import MagicMock

import pytest

from editshield_core import events
from editshield_core.config import CSPConfig
from editshield_core.csp_engine import (
    CSPPolicyEngine,
    EngineState,
    InMemoryPolicySink,
    compute_digest,
    generate_nonce,
)
from editshield_core.csp_guard import CSPHeaderGuard
from editshield_core.events import EventBus
from editshield_core.models import CSPViolation


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_engine(config=None, **kwargs):
    kwargs.setdefault("auto_rotate", False)
    kwargs.setdefault("clock", FakeClock())
    return CSPPolicyEngine(config or CSPConfig(), **kwargs)


# ============================================================================
# COMPILATION TESTS
# ============================================================================

class TestCompilePolicy:
    """Test header compilation."""

    def test_secure_defaults(self):
        """Default policy carries the restrictive directives."""
        engine = make_engine()
        directives = CSPHeaderGuard.parse_header(engine.compile_policy())

        assert directives["default-src"] == ["'none'"]
        assert directives["object-src"] == ["'none'"]
        assert directives["frame-ancestors"] == ["'none'"]
        assert directives["require-trusted-types-for"] == ["'script'"]
        assert "upgrade-insecure-requests" in directives
        assert directives["report-uri"] == ["/api/csp-report"]

    def test_script_src_has_nonce_and_strict_dynamic(self):
        """script-src gets the session nonce and 'strict-dynamic'."""
        engine = make_engine()
        nonce = engine.current_nonce()
        script_src = CSPHeaderGuard.parse_header(engine.compile_policy())["script-src"]
        assert f"'nonce-{nonce.script_nonce}'" in script_src
        assert script_src[-1] == "'strict-dynamic'"

        style_src = CSPHeaderGuard.parse_header(engine.compile_policy())["style-src"]
        assert f"'nonce-{nonce.style_nonce}'" in style_src

    def test_report_directives_come_last(self):
        """report-uri and report-to close the header."""
        engine = make_engine(CSPConfig(report_to="csp-endpoint"))
        parts = engine.compile_policy().split("; ")
        assert parts[-2] == "report-uri /api/csp-report"
        assert parts[-1] == "report-to csp-endpoint"

    @pytest.mark.parametrize("environment", ["production", "development", "test"])
    def test_nonce_and_unsafe_inline_never_coexist(self, environment):
        """A directive never carries both a nonce and 'unsafe-inline'."""
        config = CSPConfig(
            environment=environment,
            directives={
                "script-src": ["'self'", "'unsafe-inline'"],
                "style-src": ["'self'", "'unsafe-inline'"],
            },
        )
        engine = make_engine(config)
        for values in CSPHeaderGuard.parse_header(engine.compile_policy()).values():
            has_nonce = any(v.startswith("'nonce-") for v in values)
            assert not (has_nonce and "'unsafe-inline'" in values)

    def test_unsafe_inline_kept_without_nonce_or_hash(self):
        """With nothing injected, 'unsafe-inline' is left alone."""
        config = CSPConfig(use_nonces=False, directives={"style-src": ["'self'", "'unsafe-inline'"]})
        engine = make_engine(config)
        assert "'unsafe-inline'" in CSPHeaderGuard.parse_header(engine.compile_policy())["style-src"]

    def test_hash_strips_unsafe_inline(self):
        """A content hash also removes 'unsafe-inline'."""
        config = CSPConfig(use_nonces=False, directives={"style-src": ["'self'", "'unsafe-inline'"]})
        engine = make_engine(config)
        digest = engine.add_content_hash("inline-styles", "body{color:red}")
        style_src = CSPHeaderGuard.parse_header(engine.compile_policy())["style-src"]
        assert f"'sha256-{digest}'" in style_src
        assert "'unsafe-inline'" not in style_src

    def test_development_relaxations(self):
        """Development permits eval and local websockets."""
        engine = make_engine(CSPConfig(environment="development"))
        assert "'unsafe-eval'" in engine.config.directives["script-src"]
        assert "ws:" in engine.config.directives["connect-src"]

    def test_test_environment_is_report_only(self):
        """The test environment defaults to report-only."""
        engine = make_engine(CSPConfig(environment="test"))
        assert engine.config.enforce_mode is False

    def test_user_directives_merge_over_defaults(self):
        """User directives override defaults without dropping the rest."""
        engine = make_engine(CSPConfig(directives={"img-src": ["'self'"]}))
        assert engine.config.directives["img-src"] == ["'self'"]
        assert engine.config.directives["object-src"] == ["'none'"]

    def test_disabled_flag_directive_is_omitted(self):
        """False flag directives are left out."""
        engine = make_engine(CSPConfig(directives={"block-all-mixed-content": False}))
        assert "block-all-mixed-content" not in engine.compile_policy()


# ============================================================================
# NONCE AND HASH TESTS
# ============================================================================

class TestNoncesAndHashes:
    """Test nonce and hash stores."""

    def test_nonce_format(self):
        """Nonces are base64 without '+', '/' or '='."""
        nonce = generate_nonce()
        assert re.fullmatch(r"[A-Za-z0-9]+", nonce)
        assert len(nonce) >= 30

    def test_nonce_reused_within_ttl(self):
        """The same session gets the same nonce until it expires."""
        clock = FakeClock()
        engine = make_engine(clock=clock)
        first = engine.current_nonce("s1")
        clock.advance(299)
        assert engine.current_nonce("s1") is first
        clock.advance(2)
        second = engine.current_nonce("s1")
        assert second is not first
        assert not first.valid

    def test_sessions_have_separate_nonces(self):
        """Each session id has its own store."""
        engine = make_engine()
        assert engine.current_nonce("a").script_nonce != engine.current_nonce("b").script_nonce

    def test_content_hash_is_idempotent(self):
        """Adding the same content twice stores one digest."""
        engine = make_engine()
        first = engine.add_content_hash("scripts", "alert(1)")
        second = engine.add_content_hash("scripts", "alert(1)")
        assert first == second
        assert engine.hashes("scripts") == {first}
        expected = base64.b64encode(hashlib.sha256(b"alert(1)").digest()).decode("ascii")
        assert first == expected == compute_digest(b"alert(1)")

    def test_unknown_partition(self):
        """Unknown partitions are ignored."""
        engine = make_engine()
        assert engine.add_content_hash("images", "x") is None

    def test_render_inline_script(self):
        """Inline scripts carry the nonce and are hashed."""
        engine = make_engine()
        html = engine.render_inline_script("init()")
        assert html == f'<script nonce="{engine.current_nonce().script_nonce}">init()</script>'
        assert compute_digest("init()") in engine.hashes("inline-scripts")

    def test_nonce_attributes_disabled(self):
        """No nonce attributes without nonces."""
        engine = make_engine(CSPConfig(use_nonces=False))
        assert engine.nonce_attributes() is None


# ============================================================================
# LIFECYCLE TESTS
# ============================================================================

class TestLifecycle:
    """Test application, rotation and teardown."""

    def test_initialize_applies_policy(self):
        """Initialization installs the policy on the sink."""
        sink = InMemoryPolicySink()
        bus = EventBus()
        initialized = []
        bus.on(events.INITIALIZED, initialized.append)
        engine = make_engine(sink=sink, event_bus=bus)

        engine.initialize()

        assert engine.state == EngineState.NONCE_ISSUED
        assert sink.policy == engine.last_policy
        assert sink.header_name == "Content-Security-Policy"
        assert len(initialized) == 1

    def test_report_only_header(self):
        """Report-only mode uses the report-only header."""
        sink = InMemoryPolicySink()
        engine = make_engine(CSPConfig(enforce_mode=False), sink=sink)
        engine.initialize()
        assert sink.header_name == "Content-Security-Policy-Report-Only"

    def test_policy_is_replaced_not_stacked(self):
        """Each application removes the previous policy first."""
        sink = MagicMock()
        engine = make_engine(sink=sink)
        engine.initialize()
        engine.apply_policy()

        names = [call[0] for call in sink.method_calls]
        assert names == ["remove_policy", "apply_policy", "remove_policy", "apply_policy"]

    def test_rotation_replaces_nonces(self):
        """Rotation invalidates nonces and re-applies the policy."""
        sink = InMemoryPolicySink()
        bus = EventBus()
        rotated = []
        bus.on(events.NONCES_ROTATED, rotated.append)
        engine = make_engine(sink=sink, event_bus=bus)
        engine.initialize()
        old = engine.current_nonce()
        old_policy = sink.policy

        engine.rotate_nonces()

        assert engine.state == EngineState.ROTATED
        assert not old.valid
        assert engine.current_nonce().script_nonce != old.script_nonce
        assert sink.policy != old_policy
        assert sink.apply_count == 2
        assert rotated == [{"invalidated": 1}]

    def test_destroy_releases_sink(self):
        """Destroy removes the policy and drops the sink."""
        sink = InMemoryPolicySink()
        engine = make_engine(sink=sink)
        engine.initialize()
        engine.add_content_hash("scripts", "x")

        engine.destroy()

        assert engine.state == EngineState.DESTROYED
        assert sink.policy is None
        assert engine.sink is None
        assert engine.hashes("scripts") == set()

        engine.rotate_nonces()
        engine.initialize()
        assert engine.state == EngineState.DESTROYED
        assert sink.apply_count == 1

    def test_rotation_task_is_cancelled(self):
        """The scheduled rotation stops on destroy."""
        engine = make_engine(auto_rotate=True)
        engine.initialize()
        assert engine.get_status()["rotation_active"]
        engine.destroy()
        assert not engine.get_status()["rotation_active"]

    def test_disabled_engine_does_not_apply(self):
        """A disabled engine never touches the sink."""
        sink = InMemoryPolicySink()
        engine = make_engine(CSPConfig(enabled=False), sink=sink)
        engine.initialize()
        assert sink.apply_count == 0


# ============================================================================
# CONFIGURATION TESTS
# ============================================================================

class TestConfiguration:
    """Test runtime configuration changes."""

    def test_untrusted_directive_is_sanitized(self):
        """Unsafe untrusted values are replaced by their sanitized form."""
        engine = make_engine()
        value = engine.set_directive(
            "script-src", "'self' https://cdn.example.com 'unsafe-eval'", untrusted=True
        )
        assert value == ["'self'", "https://cdn.example.com"]

    def test_untrusted_script_url_falls_back_to_none(self):
        """An entirely unsafe value never becomes permissive."""
        engine = make_engine()
        assert engine.set_directive("connect-src", "javascript:alert(1)", untrusted=True) == ["'none'"]

    def test_untrusted_multi_token_value_is_kept(self):
        """Safe untrusted sources survive validation token for token."""
        engine = make_engine()
        value = engine.set_directive("img-src", "'self' data: https:", untrusted=True)
        assert value == ["'self'", "data:", "https:"]
        assert engine.set_directive(
            "script-src", "'self' https://cdn.example.com", untrusted=True
        ) == ["'self'", "https://cdn.example.com"]

    def test_switch_to_production_drops_development_relaxations(self):
        """Relaxations come from the environment, not the stored directives."""
        engine = make_engine(CSPConfig(environment="development"))
        config = engine.update_config(environment="production")

        assert "'unsafe-eval'" not in config.directives["script-src"]
        assert "ws:" not in config.directives.get("connect-src", [])
        assert "http://localhost:*" not in engine.compile_policy()
        assert engine.validate_configuration()["is_valid"]

    def test_switch_from_test_restores_enforcement(self):
        """Leaving the test environment turns enforcement back on."""
        engine = make_engine(CSPConfig(environment="test"))
        assert engine.update_config(environment="production").enforce_mode is True

    def test_directives_survive_config_updates(self):
        """Directives set at runtime persist across later updates."""
        engine = make_engine()
        engine.set_directive("img-src", ["'self'", "https://images.example.com"])
        config = engine.update_config(report_uri="/csp")
        assert config.directives["img-src"] == ["'self'", "https://images.example.com"]

    def test_trusted_values_are_kept(self):
        """Trusted values are stored as given."""
        engine = make_engine()
        assert engine.set_directive("img-src", ["'self'", "https:"]) == ["'self'", "https:"]

    def test_set_directive_reapplies_active_policy(self):
        """Changing a directive on an active engine re-applies the policy."""
        sink = InMemoryPolicySink()
        engine = make_engine(sink=sink)
        engine.initialize()
        engine.set_directive("img-src", ["'self'"])
        assert sink.apply_count == 2
        assert "img-src 'self';" in sink.policy

    def test_update_config_emits_event(self):
        """Configuration updates are announced."""
        bus = EventBus()
        updates = []
        bus.on(events.CONFIG_UPDATED, updates.append)
        engine = make_engine(event_bus=bus)
        config = engine.update_config(report_uri="/csp", unknown_setting=1)
        assert config.report_uri == "/csp"
        assert len(updates) == 1

    def test_validate_configuration(self):
        """Production misconfigurations are reported."""
        engine = make_engine(CSPConfig(directives={"script-src": ["'self'", "'unsafe-eval'"]}))
        result = engine.validate_configuration()
        assert not result["is_valid"]
        assert "'unsafe-eval' should not be used in script-src for production" in result["errors"]
        assert make_engine().validate_configuration() == {"is_valid": True, "errors": []}

    def test_remediation_suggestions(self):
        """Inline violations suggest nonces or hashes."""
        engine = make_engine()
        violation = CSPViolation(violated_directive="script-src-elem", blocked_uri="inline")
        assert "Use nonce or hash for inline scripts" in engine.suggest_remediation(violation)
