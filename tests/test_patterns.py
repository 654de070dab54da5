"""
Pattern Classifier Test Suite
=============================

Tests for table-driven pattern matching and keyword severity:
- Match extraction and per-pattern caps
- Severity classification of the default tables
- Non-string and overlong input

Author: jetgause
Created: 2025-12-14
"""

import re

import pytest

from editshield_core.config import DEFAULT_SUSPICIOUS_PATTERNS
from editshield_core.models import Severity
from editshield_core.patterns import (
    SQL_INJECTION_PATTERNS,
    XSS_SIGNATURE_PATTERNS,
    DetectionPattern,
    PatternClassifier,
)


# ============================================================================
# CLASSIFICATION TESTS
# ============================================================================

class TestClassify:
    """Test pattern matching over text."""

    def test_clean_text_has_no_matches(self):
        """Plain text matches nothing in the default table."""
        classifier = PatternClassifier()
        assert classifier.classify("Just a friendly paragraph.") == []
        assert not classifier.matches_any("Just a friendly paragraph.")

    def test_script_tag_matches(self):
        """A script tag is found by the script pattern."""
        classifier = PatternClassifier()
        sources = classifier.matching_sources("<script>alert(1)</script>")
        assert r"<script[^>]*>" in sources

    def test_case_insensitive(self):
        """Default patterns ignore case."""
        classifier = PatternClassifier()
        assert classifier.matches_any("JaVaScRiPt:alert(1)")

    def test_matches_capped_per_pattern(self):
        """At most five matches are kept for one pattern."""
        classifier = PatternClassifier([r"eval\s*\("])
        result = classifier.classify("eval(1) " * 10)
        assert len(result) == 1
        assert len(result[0].matches) == 5

    def test_non_string_input_yields_nothing(self):
        """Callers reject wrong types; classification returns no matches."""
        classifier = PatternClassifier()
        assert classifier.classify(None) == []
        assert classifier.classify(b"<script>") == []
        assert not classifier.matches_any(42)

    def test_scan_is_bounded(self):
        """Content past the scan limit is ignored."""
        classifier = PatternClassifier(max_scan_length=100)
        text = "a" * 200 + "<script>"
        assert not classifier.matches_any(text)

    def test_accepts_compiled_and_detection_patterns(self):
        """Tables may mix strings, compiled patterns and DetectionPattern."""
        table = [
            "foo",
            re.compile("bar"),
            DetectionPattern("baz", re.compile("baz"), "custom"),
        ]
        classifier = PatternClassifier(table)
        sources = classifier.matching_sources("foo bar baz")
        assert sources == ["foo", "bar", "baz"]
        assert classifier.patterns[2].category == "custom"


# ============================================================================
# SEVERITY TESTS
# ============================================================================

class TestSeverity:
    """Test keyword-based severity classification."""

    @pytest.mark.parametrize("source", [
        r"<script[^>]*>",
        r"javascript:",
        r"vbscript:",
        r"document\.cookie",
        r"eval\s*\(",
        r"setTimeout\s*\(",
        r"setInterval\s*\(",
    ])
    def test_high_severity_patterns(self, source):
        """Script execution patterns are high severity."""
        assert PatternClassifier.severity_of(source) == Severity.HIGH

    @pytest.mark.parametrize("source", [
        r"on\w+\s*=",
        r"expression\s*\(",
        r"@import",
    ])
    def test_medium_severity_patterns(self, source):
        """Handler, expression and import patterns are medium severity."""
        assert PatternClassifier.severity_of(source) == Severity.MEDIUM

    def test_other_patterns_are_low(self):
        """Patterns without keywords are low severity."""
        assert PatternClassifier.severity_of(r"document\.write") == Severity.LOW

    def test_every_default_pattern_classifies(self):
        """Every default pattern yields a severity."""
        for source in DEFAULT_SUSPICIOUS_PATTERNS:
            assert PatternClassifier.severity_of(source) in list(Severity)


# ============================================================================
# SIGNATURE TABLE TESTS
# ============================================================================

class TestSignatureTables:
    """Test the SQL injection and XSS signature tables."""

    def test_sql_union_select(self):
        """UNION SELECT is detected."""
        classifier = PatternClassifier(SQL_INJECTION_PATTERNS)
        assert classifier.matches_any("1 UNION SELECT password FROM users")

    def test_sql_quoted_boolean(self):
        """Classic quoted tautology is detected."""
        classifier = PatternClassifier(SQL_INJECTION_PATTERNS)
        assert classifier.matches_any("' OR '1'='1' or true")

    def test_xss_script_block(self):
        """Complete script blocks are detected."""
        classifier = PatternClassifier(XSS_SIGNATURE_PATTERNS)
        assert classifier.matches_any("<script>alert('x')</script>")

    def test_xss_ignores_plain_text(self):
        """Ordinary text does not trigger XSS signatures."""
        classifier = PatternClassifier(XSS_SIGNATURE_PATTERNS)
        assert not classifier.matches_any("Meet me at noon")
