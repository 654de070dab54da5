"""
Pattern Classification
======================

Table-driven threat pattern matching:
- Precompiled detection pattern tables (suspicious input, SQL injection, XSS)
- Match extraction bounded per pattern
- Keyword-based severity classification

Classification is deterministic and has no side effects.

Author: jetgause
Created: 2025-12-14
Version: 1.0.0
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Pattern, Union

from editshield_core.config import DEFAULT_SUSPICIOUS_PATTERNS
from editshield_core.models import Severity


@dataclass(frozen=True)
class DetectionPattern:
    """A compiled pattern tagged with a human-readable category."""
    name: str
    pattern: Pattern
    category: str = "suspicious"

    @property
    def source(self) -> str:
        return self.pattern.pattern


@dataclass
class PatternMatch:
    """One pattern that matched, with up to ``max_matches`` matched substrings."""
    pattern: DetectionPattern
    matches: List[str] = field(default_factory=list)


def _to_detection_pattern(item: Union[DetectionPattern, Pattern, str], category: str) -> DetectionPattern:
    if isinstance(item, DetectionPattern):
        return item
    if isinstance(item, str):
        item = re.compile(item, re.IGNORECASE)
    return DetectionPattern(name=item.pattern, pattern=item, category=category)


# ============================================================================
# SIGNATURE TABLES
# ============================================================================

SQL_INJECTION_PATTERNS = [
    DetectionPattern("quoted_boolean",
                     re.compile(r"(['\"](\s)*(or|and)(\s)*['\"]?\s*=?\s*['\"]?\s*(or|and|true|false))", re.IGNORECASE),
                     "sql_injection"),
    DetectionPattern("union_select", re.compile(r"(union(\s)+select)", re.IGNORECASE), "sql_injection"),
    DetectionPattern("select_star", re.compile(r"(select(\s)+\*(\s)+from)", re.IGNORECASE), "sql_injection"),
    DetectionPattern("drop_table", re.compile(r"(drop(\s)+table)", re.IGNORECASE), "sql_injection"),
    DetectionPattern("insert_into", re.compile(r"(insert(\s)+into)", re.IGNORECASE), "sql_injection"),
    DetectionPattern("delete_from", re.compile(r"(delete(\s)+from)", re.IGNORECASE), "sql_injection"),
    DetectionPattern("update_set", re.compile(r"(update(\s)+set)", re.IGNORECASE), "sql_injection"),
    DetectionPattern("comment_sequence", re.compile(r"(--|#|/\*|\*/)"), "sql_injection"),
]

XSS_SIGNATURE_PATTERNS = [
    DetectionPattern("script_block", re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL), "xss"),
    DetectionPattern("iframe_block", re.compile(r"<iframe[^>]*>.*?</iframe>", re.IGNORECASE | re.DOTALL), "xss"),
    DetectionPattern("javascript_protocol", re.compile(r"javascript:", re.IGNORECASE), "xss"),
    DetectionPattern("quoted_event_handler", re.compile(r"on\w+\s*=\s*[\"'][^\"']*[\"']", re.IGNORECASE), "xss"),
    DetectionPattern("img_src", re.compile(r"<img[^>]+src[^>]*=.*?>", re.IGNORECASE | re.DOTALL), "xss"),
    DetectionPattern("object_block", re.compile(r"<object[^>]*>.*?</object>", re.IGNORECASE | re.DOTALL), "xss"),
    DetectionPattern("embed_block", re.compile(r"<embed[^>]*>.*?</embed>", re.IGNORECASE | re.DOTALL), "xss"),
    DetectionPattern("eval_call", re.compile(r"eval\s*\(", re.IGNORECASE), "xss"),
    DetectionPattern("css_expression", re.compile(r"expression\s*\(", re.IGNORECASE), "xss"),
]


# ============================================================================
# CLASSIFIER
# ============================================================================

class PatternClassifier:
    """Runs an ordered pattern table over text and classifies findings."""

    HIGH_SEVERITY_KEYWORDS = (
        "script",
        "javascript:",
        "vbscript:",
        "document.cookie",
        "eval(",
        "settimeout(",
        "setinterval(",
    )

    MEDIUM_SEVERITY_KEYWORDS = (
        r"on\w+\s*=",
        "expression",
        "@import",
    )

    def __init__(self, patterns: Optional[Iterable[Union[DetectionPattern, Pattern, str]]] = None,
                 category: str = "suspicious", max_matches: int = 5,
                 max_scan_length: int = 100000):
        if patterns is None:
            patterns = DEFAULT_SUSPICIOUS_PATTERNS
        self.patterns: List[DetectionPattern] = [
            _to_detection_pattern(item, category) for item in patterns
        ]
        self.max_matches = max_matches
        self.max_scan_length = max_scan_length

    def classify(self, text: str) -> List[PatternMatch]:
        """Return every pattern that matches ``text`` along with its matches.

        Non-string input yields no matches; callers are expected to reject it
        before classification. Text beyond ``max_scan_length`` is not scanned.
        """
        if not isinstance(text, str):
            return []
        sample = text[:self.max_scan_length]

        results = []
        for detection in self.patterns:
            matches = []
            for match in detection.pattern.finditer(sample):
                matches.append(match.group(0))
                if len(matches) >= self.max_matches:
                    break
            if matches:
                results.append(PatternMatch(pattern=detection, matches=matches))
        return results

    def matches_any(self, text: str) -> bool:
        if not isinstance(text, str):
            return False
        sample = text[:self.max_scan_length]
        return any(d.pattern.search(sample) for d in self.patterns)

    def matching_sources(self, text: str) -> List[str]:
        return [m.pattern.source for m in self.classify(text)]

    @classmethod
    def severity_of(cls, pattern_source: str, input_sample: Optional[str] = None) -> Severity:
        """
        Classify a pattern by the keywords its source text contains.

        Regex escapes and whitespace quantifiers are ignored for the high
        keyword check, so ``eval\\s*\\(`` is treated as ``eval(``. The input
        sample is accepted for interface symmetry; severity depends on the
        pattern alone.
        """
        raw = pattern_source.lower()
        normalized = _normalize_pattern_source(raw)

        if any(k in raw or k in normalized for k in cls.HIGH_SEVERITY_KEYWORDS):
            return Severity.HIGH
        if any(k in raw or k in normalized for k in cls.MEDIUM_SEVERITY_KEYWORDS):
            return Severity.MEDIUM
        return Severity.LOW


_WHITESPACE_QUANTIFIER = re.compile(r"\\s[*+?]?")


def _normalize_pattern_source(source: str) -> str:
    return _WHITESPACE_QUANTIFIER.sub("", source).replace("\\", "")
