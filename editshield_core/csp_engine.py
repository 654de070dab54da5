"""
CSP Policy Engine
=================

Builds and applies the Content-Security-Policy for the editing surface:
- Secure default directives with environment-specific relaxations
- Per-session script/style nonces with a bounded lifetime
- Content hash store (scripts, styles, inline-scripts, inline-styles)
- Policy compilation to the CSP3 header grammar
- Delivery to a policy sink, replacing any previously applied policy
- Timer-driven nonce rotation, cancelable on teardown

Nonce lifecycle: uninitialized -> nonce-issued -> rotated (loop) -> destroyed.

Author: jetgause
Created: 2025-12-14
Version: 1.0.0
"""

import base64
import copy
import hashlib
import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from editshield_core import events
from editshield_core.config import CSPConfig, DirectiveValue, default_directives
from editshield_core.csp_guard import KNOWN_DIRECTIVES, CSPHeaderGuard
from editshield_core.events import EventBus
from editshield_core.models import CSPViolation, NonceStore
from editshield_core.scheduler import PeriodicTask

logger = logging.getLogger(__name__)

HASH_PARTITIONS = ("scripts", "styles", "inline-scripts", "inline-styles")

DIRECTIVE_PARTITIONS = {
    "script-src": ("scripts", "inline-scripts"),
    "style-src": ("styles", "inline-styles"),
}

DEFAULT_SESSION = "default"
UNSAFE_INLINE = "'unsafe-inline'"
STRICT_DYNAMIC = "'strict-dynamic'"


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    NONCE_ISSUED = "nonce-issued"
    ROTATED = "rotated"
    DESTROYED = "destroyed"


# ============================================================================
# POLICY SINKS
# ============================================================================

class PolicySink(ABC):
    """Installs or removes the active policy in the hosting environment."""

    @abstractmethod
    def apply_policy(self, policy: str, enforce: bool):
        pass

    @abstractmethod
    def remove_policy(self):
        pass


class InMemoryPolicySink(PolicySink):
    """Keeps the active policy in memory; useful for hosts that read it on demand."""

    def __init__(self):
        self.policy: Optional[str] = None
        self.enforce = True
        self.apply_count = 0
        self._lock = threading.Lock()

    @property
    def header_name(self) -> str:
        return policy_header_name(self.enforce)

    def apply_policy(self, policy: str, enforce: bool):
        with self._lock:
            if self.policy is not None:
                raise RuntimeError("Policy already installed; remove it first")
            self.policy = policy
            self.enforce = enforce
            self.apply_count += 1

    def remove_policy(self):
        with self._lock:
            self.policy = None


def policy_header_name(enforce: bool) -> str:
    return "Content-Security-Policy" if enforce else "Content-Security-Policy-Report-Only"


# ============================================================================
# NONCES AND HASHES
# ============================================================================

def generate_nonce(num_bytes: int = 32) -> str:
    """Base64 of ``num_bytes`` random bytes with ``+``, ``/`` and ``=`` removed."""
    encoded = base64.b64encode(secrets.token_bytes(num_bytes)).decode("ascii")
    return encoded.replace("+", "").replace("/", "").replace("=", "")


def compute_digest(content: Union[str, bytes]) -> str:
    """Base64 SHA-256 digest as used in ``'sha256-...'`` source expressions."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return base64.b64encode(hashlib.sha256(content).digest()).decode("ascii")


# ============================================================================
# ENGINE
# ============================================================================

class CSPPolicyEngine:
    """Computes and applies the policy for one hosting environment."""

    def __init__(self, config: Optional[CSPConfig] = None,
                 sink: Optional[PolicySink] = None,
                 guard: Optional[CSPHeaderGuard] = None,
                 event_bus: Optional[EventBus] = None,
                 clock: Callable[[], float] = time.time,
                 auto_rotate: bool = True):
        # Caller settings before defaults and environment relaxations are applied
        self._base_config = copy.deepcopy(config or CSPConfig())
        self.config = self.resolve_config(self._base_config)
        self.sink = sink if sink is not None else InMemoryPolicySink()
        self.guard = guard or CSPHeaderGuard()
        self.event_bus = event_bus or EventBus()
        self.auto_rotate = auto_rotate
        self._clock = clock

        self.state = EngineState.UNINITIALIZED
        self.last_policy: Optional[str] = None
        self._nonces: Dict[str, NonceStore] = {}
        self._hashes: Dict[str, Set[str]] = {p: set() for p in HASH_PARTITIONS}
        self._rotation_task: Optional[PeriodicTask] = None

        self._nonce_lock = threading.RLock()
        self._hash_lock = threading.Lock()
        self._apply_lock = threading.RLock()

    # ========================================================================
    # CONFIGURATION
    # ========================================================================

    @staticmethod
    def resolve_config(config: CSPConfig) -> CSPConfig:
        """Merge directives over secure defaults and apply environment relaxations."""
        resolved = copy.copy(config)
        directives = default_directives()
        directives.update(copy.deepcopy(config.directives))

        for name in directives:
            if name not in KNOWN_DIRECTIVES:
                logger.warning(f"Unknown CSP directive in configuration: {name}")

        if resolved.environment == "development":
            directives["script-src"] = ["'self'", "'unsafe-eval'"]
            directives["connect-src"] = [
                "'self'", "ws:", "wss:", "http://localhost:*", "https://localhost:*",
            ]
        elif resolved.environment == "test":
            resolved.enforce_mode = False
            directives["script-src"] = ["'self'", "'unsafe-eval'", UNSAFE_INLINE]

        resolved.directives = directives
        return resolved

    def update_config(self, **changes: Any) -> CSPConfig:
        """Apply configuration changes and re-apply the policy if active."""
        updated = copy.deepcopy(self._base_config)
        for key, value in changes.items():
            if not hasattr(updated, key):
                logger.warning(f"Ignoring unknown CSP setting: {key}")
                continue
            setattr(updated, key, value)
        self._base_config = updated
        self.config = self.resolve_config(updated)

        if self.is_active:
            self.apply_policy()
            self._sync_rotation()

        self.event_bus.emit(events.CONFIG_UPDATED, {"config": self.config})
        logger.info("CSP configuration updated")
        return self.config

    def set_directive(self, name: str, sources: Union[List[str], str, bool],
                      untrusted: bool = False) -> DirectiveValue:
        """
        Set one directive. Values from untrusted input are validated by the
        header guard and replaced by their sanitized form when unsafe.
        """
        name = name.strip().lower()
        if name not in KNOWN_DIRECTIVES:
            logger.warning(f"Unknown CSP directive: {name}")

        if isinstance(sources, bool):
            value: DirectiveValue = sources
        else:
            tokens = sources.split() if isinstance(sources, str) else [str(s) for s in sources]
            if untrusted:
                result = self.guard.validate_value(name, " ".join(tokens))
                if not result.is_safe:
                    logger.warning(
                        f"Sanitized untrusted value for {name}: {result.threats}"
                    )
                    tokens = result.sanitized_value.split()
            value = tokens

        base_directives = dict(self._base_config.directives)
        base_directives[name] = value
        self._base_config.directives = base_directives

        directives = dict(self.config.directives)
        directives[name] = value
        self.config.directives = directives

        if self.is_active:
            self.apply_policy()
        return value

    def validate_configuration(self) -> Dict[str, Any]:
        errors = []
        directives = self.config.directives

        if self.config.environment == "production":
            script_src = _as_list(directives.get("script-src"))
            if UNSAFE_INLINE in script_src:
                errors.append("'unsafe-inline' should not be used in script-src for production")
            if "'unsafe-eval'" in script_src:
                errors.append("'unsafe-eval' should not be used in script-src for production")
            style_src = _as_list(directives.get("style-src"))
            if UNSAFE_INLINE in style_src and not self.config.use_nonces and not self.config.use_hashes:
                errors.append("'unsafe-inline' in style-src without nonces or hashes is not secure")

        if not directives.get("default-src"):
            errors.append("default-src directive is recommended")
        if not directives.get("script-src"):
            errors.append("script-src directive is required")
        if "*" in _as_list(directives.get("default-src")):
            errors.append("Wildcard '*' in default-src is too permissive")

        return {"is_valid": not errors, "errors": errors}

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    @property
    def is_active(self) -> bool:
        return self.state in (EngineState.NONCE_ISSUED, EngineState.ROTATED)

    def initialize(self):
        """Apply the policy and start nonce rotation."""
        if self.state == EngineState.DESTROYED:
            logger.warning("Cannot initialize a destroyed CSP engine")
            return
        if self.is_active or not self.config.enabled:
            return

        self.apply_policy()
        self.state = EngineState.NONCE_ISSUED
        self._sync_rotation()
        self.event_bus.emit(events.INITIALIZED, {"engine": "csp"})

        logger.info(
            f"CSP engine initialized (enforce={self.config.enforce_mode}, "
            f"nonces={self.config.use_nonces}, hashes={self.config.use_hashes}, "
            f"environment={self.config.environment})"
        )

    def _sync_rotation(self):
        wanted = self.config.use_nonces and self.auto_rotate
        if wanted and self._rotation_task is None:
            self._rotation_task = PeriodicTask(
                self.config.rotation_interval, self.rotate_nonces, name="csp-nonce-rotation"
            )
            self._rotation_task.start()
        elif not wanted and self._rotation_task is not None:
            self._rotation_task.cancel()
            self._rotation_task = None

    def destroy(self):
        """Cancel rotation, remove the applied policy and release the sink."""
        if self._rotation_task is not None:
            self._rotation_task.cancel()
            self._rotation_task = None

        with self._apply_lock:
            sink, self.sink = self.sink, None
            if sink is not None and self.last_policy is not None:
                try:
                    sink.remove_policy()
                except Exception as e:
                    logger.error(f"Failed to remove policy during teardown: {e}")

        with self._nonce_lock:
            self._nonces.clear()
        with self._hash_lock:
            for partition in self._hashes.values():
                partition.clear()

        self.state = EngineState.DESTROYED
        logger.info("CSP engine destroyed")

    # ========================================================================
    # NONCES
    # ========================================================================

    def current_nonce(self, session_id: str = DEFAULT_SESSION) -> NonceStore:
        """Return the session's valid nonce pair, issuing a new one if needed."""
        with self._nonce_lock:
            now = self._clock()
            stored = self._nonces.get(session_id)
            if stored is not None and stored.valid and now - stored.created_at < self.config.nonce_ttl:
                return stored

            if stored is not None:
                stored.valid = False
            fresh = NonceStore(
                script_nonce=generate_nonce(self.config.nonce_bytes),
                style_nonce=generate_nonce(self.config.nonce_bytes),
                created_at=now,
            )
            self._nonces[session_id] = fresh
            return fresh

    def nonce_attributes(self, session_id: str = DEFAULT_SESSION) -> Optional[Dict[str, str]]:
        """Nonce values for templates, or None when nonces are disabled."""
        if not self.config.use_nonces:
            return None
        store = self.current_nonce(session_id)
        return {"script": store.script_nonce, "style": store.style_nonce}

    def rotate_nonces(self):
        """Invalidate and discard every nonce, then re-apply the policy."""
        if self.state == EngineState.DESTROYED:
            return

        with self._nonce_lock:
            count = len(self._nonces)
            for store in self._nonces.values():
                store.valid = False
            self._nonces.clear()

        if self.is_active:
            self.apply_policy()
            self.state = EngineState.ROTATED

        self.event_bus.emit(events.NONCES_ROTATED, {"invalidated": count})
        logger.info("CSP nonces rotated successfully")

    # ========================================================================
    # HASHES
    # ========================================================================

    def add_content_hash(self, partition: str, content: Union[str, bytes]) -> Optional[str]:
        """Add the digest of ``content`` to a partition; returns the digest."""
        if partition not in self._hashes:
            logger.warning(f"Unknown hash partition: {partition}")
            return None
        digest = compute_digest(content)
        with self._hash_lock:
            self._hashes[partition].add(digest)
        return digest

    def hashes(self, partition: str) -> Set[str]:
        with self._hash_lock:
            return set(self._hashes.get(partition, ()))

    def _hash_tokens(self, directive: str) -> List[str]:
        tokens = []
        with self._hash_lock:
            for partition in DIRECTIVE_PARTITIONS.get(directive, ()):
                tokens.extend(f"'sha256-{digest}'" for digest in sorted(self._hashes[partition]))
        return tokens

    def render_inline_script(self, content: str, session_id: str = DEFAULT_SESSION) -> str:
        """Render an inline script carrying the session nonce; its hash is recorded."""
        return self._render_inline("script", "inline-scripts", content, session_id)

    def render_inline_style(self, content: str, session_id: str = DEFAULT_SESSION) -> str:
        return self._render_inline("style", "inline-styles", content, session_id)

    def _render_inline(self, tag: str, partition: str, content: str, session_id: str) -> str:
        attributes = ""
        if self.config.use_nonces:
            store = self.current_nonce(session_id)
            nonce = store.script_nonce if tag == "script" else store.style_nonce
            attributes = f' nonce="{nonce}"'
        if self.config.use_hashes:
            self.add_content_hash(partition, content)
        return f"<{tag}{attributes}>{content}</{tag}>"

    # ========================================================================
    # COMPILATION AND APPLICATION
    # ========================================================================

    def compile_policy(self, session_id: str = DEFAULT_SESSION) -> str:
        """Compile the directive set into a ``name v1 v2; ...`` header value."""
        use_nonces = self.config.use_nonces
        nonce = self.current_nonce(session_id) if use_nonces else None
        parts = []

        for directive, sources in self.config.directives.items():
            if isinstance(sources, bool):
                if sources:
                    parts.append(directive)
                continue
            if not sources:
                continue

            tokens = list(sources)
            protected = False

            if nonce is not None and directive == "script-src":
                tokens.append(f"'nonce-{nonce.script_nonce}'")
                protected = True
            elif nonce is not None and directive == "style-src":
                tokens.append(f"'nonce-{nonce.style_nonce}'")
                protected = True

            if self.config.use_hashes:
                hash_tokens = self._hash_tokens(directive)
                tokens.extend(hash_tokens)
                protected = protected or bool(hash_tokens)

            if directive == "script-src" and use_nonces:
                tokens.append(STRICT_DYNAMIC)

            if protected:
                tokens = [t for t in tokens if t.lower() != UNSAFE_INLINE]

            parts.append(f"{directive} {' '.join(_dedupe(tokens))}")

        if self.config.report_uri and "report-uri" not in self.config.directives:
            parts.append(f"report-uri {self.config.report_uri}")
        if self.config.report_to and "report-to" not in self.config.directives:
            parts.append(f"report-to {self.config.report_to}")

        return "; ".join(parts)

    def apply_policy(self) -> Optional[str]:
        """Replace the sink's policy with a freshly compiled one."""
        with self._apply_lock:
            if self.sink is None:
                logger.warning("No policy sink attached; policy not applied")
                return None
            policy = self.compile_policy()
            self.sink.remove_policy()
            self.sink.apply_policy(policy, self.config.enforce_mode)
            self.last_policy = policy

        mode = "enforced" if self.config.enforce_mode else "report-only"
        logger.info(f"CSP {mode} policy applied: {policy[:200]}")
        return policy

    # ========================================================================
    # STATUS
    # ========================================================================

    def suggest_remediation(self, violation: CSPViolation) -> List[str]:
        """Development hints for a violation."""
        suggestions = []
        directive = violation.violated_directive
        blocked = violation.blocked_uri

        if directive.startswith("script-src"):
            if blocked == "inline":
                suggestions.append("Use nonce or hash for inline scripts")
                suggestions.append("Move script content to external file")
            else:
                suggestions.append(f"Add '{blocked}' to script-src directive")
        if directive.startswith("style-src"):
            if blocked == "inline":
                suggestions.append("Use nonce or hash for inline styles")
                suggestions.append("Move styles to external CSS file")
            else:
                suggestions.append(f"Add '{blocked}' to style-src directive")

        if suggestions:
            logger.info(f"CSP remediation suggestions for {directive}: {suggestions}")
        return suggestions

    def get_status(self) -> Dict[str, Any]:
        with self._nonce_lock:
            nonce_count = len(self._nonces)
        with self._hash_lock:
            hash_count = sum(len(p) for p in self._hashes.values())
        return {
            "enabled": self.config.enabled,
            "enforcing": self.config.enforce_mode,
            "state": self.state.value,
            "environment": self.config.environment,
            "nonce_count": nonce_count,
            "hash_count": hash_count,
            "rotation_active": self._rotation_task is not None,
            "last_policy": self.last_policy,
        }


def _as_list(value: Optional[DirectiveValue]) -> List[str]:
    if isinstance(value, list):
        return value
    return []


def _dedupe(tokens: List[str]) -> List[str]:
    seen = set()
    unique = []
    for token in tokens:
        if token not in seen:
            seen.add(token)
            unique.append(token)
    return unique
