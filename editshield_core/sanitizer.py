"""
HTML Sanitization Capability
============================

The engine never sanitizes HTML itself. It delegates to an
``HtmlSanitizer`` resolved at construction time:
- ``StripAllSanitizer``: safe default, removes all markup
- ``BleachSanitizer``: allow-list sanitizer backed by ``bleach``

``options_for_mode`` maps the configured XSS mode to sanitizer options.

Author: jetgause
Created: 2025-12-14
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Pattern

import bleach

# Mirrors the URI allow-list used by common DOM sanitizers: http(s)/mailto,
# relative references, and schemes that cannot be confused with a protocol.
SAFE_URI_PATTERN = re.compile(
    r"^(?:(?:https?|mailto):|[^a-z]|[a-z+.-]+(?:[^a-z+.\-:]|$))",
    re.IGNORECASE,
)

URI_ATTRIBUTES = frozenset(["href", "src", "action", "xlink:href", "formaction"])

_SCRIPT_STYLE_BLOCK = re.compile(r"<(script|style)[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")


@dataclass
class SanitizeOptions:
    """Options handed to the sanitizer capability."""
    allowed_tags: List[str] = field(default_factory=list)
    allowed_attributes: List[str] = field(default_factory=list)
    allow_data_attributes: bool = False
    allowed_uri_pattern: Optional[Pattern] = None


def strip_markup(html: str) -> str:
    """Remove every tag, dropping script/style bodies entirely."""
    text = _SCRIPT_STYLE_BLOCK.sub("", html)
    return _TAG.sub("", text)


def options_for_mode(mode: str, allowed_tags: Optional[List[str]] = None,
                     allowed_attributes: Optional[List[str]] = None) -> SanitizeOptions:
    """
    Build sanitizer options for an XSS mode.

    strict   -- tag/attribute allow-list only, no data attributes
    moderate -- adds safe inline/list tags and a URI allow-list
    loose    -- caller lists as given, data attributes permitted
    """
    if mode == "strict":
        return SanitizeOptions(
            allowed_tags=list(allowed_tags) if allowed_tags else ["b", "i", "em", "strong"],
            allowed_attributes=list(allowed_attributes or []),
            allow_data_attributes=False,
        )
    if mode == "moderate":
        return SanitizeOptions(
            allowed_tags=list(allowed_tags) if allowed_tags else
            ["b", "i", "em", "strong", "a", "p", "br", "ul", "ol", "li"],
            allowed_attributes=list(allowed_attributes) if allowed_attributes else ["href", "target"],
            allow_data_attributes=False,
            allowed_uri_pattern=SAFE_URI_PATTERN,
        )
    if mode == "loose":
        return SanitizeOptions(
            allowed_tags=list(allowed_tags or []),
            allowed_attributes=list(allowed_attributes or []),
            allow_data_attributes=True,
        )
    return SanitizeOptions()


class HtmlSanitizer(ABC):
    """Capability interface: ``sanitize(html, options) -> html``."""

    @abstractmethod
    def sanitize(self, html: str, options: SanitizeOptions) -> str:
        pass


class StripAllSanitizer(HtmlSanitizer):
    """Default capability: returns plain text."""

    def sanitize(self, html: str, options: SanitizeOptions) -> str:
        return strip_markup(html)


class BleachSanitizer(HtmlSanitizer):
    """Allow-list sanitizer delegating to ``bleach.clean``."""

    def __init__(self, strip: bool = True, strip_comments: bool = True):
        self.strip = strip
        self.strip_comments = strip_comments

    def sanitize(self, html: str, options: SanitizeOptions) -> str:
        allowed = set(options.allowed_attributes)

        def allow_attribute(tag, name, value):
            if name in allowed:
                if name in URI_ATTRIBUTES and options.allowed_uri_pattern is not None:
                    return bool(options.allowed_uri_pattern.match(value.strip()))
                return True
            return options.allow_data_attributes and name.startswith("data-")

        return bleach.clean(
            html,
            tags=set(options.allowed_tags),
            attributes=allow_attribute,
            protocols={"http", "https", "mailto"},
            strip=self.strip,
            strip_comments=self.strip_comments,
        )
