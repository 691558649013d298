"""Text predicates shared by the plan rules and the content hasher."""

from __future__ import annotations

import re
from typing import Pattern

_CRLF = re.compile(r"\r\n?")
_HORIZONTAL_RUN = re.compile(r"[ \t]+")
_NEWLINE_RUN = re.compile(r"\n+")

_PLACEHOLDER_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"\bTBD\b", re.IGNORECASE),
    re.compile(r"\bTODO\b", re.IGNORECASE),
    re.compile(r"\bFIXME\b", re.IGNORECASE),
    re.compile(r"\bto be (?:determined|filled)\b", re.IGNORECASE),
    re.compile(r"\bplaceholder\b", re.IGNORECASE),
    re.compile(r"\[\s*\.\.\.\s*\]"),
    re.compile(r"<\s*\.\.\.\s*>"),
)

# Generator markers look like [DECISION_NEEDED], [PLAN_STEP id="x"] or
# [/PLAN_STEP]: upper-case words joined by at least one underscore.
_MARKER_PATTERN: Pattern[str] = re.compile(r"\[/?[A-Z][A-Z0-9]*(?:_[A-Z0-9]+)+(?:\s[^\]]*)?\]")

_SLUG_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9]+")


def normalize_whitespace(value: str | None) -> str:
    """Collapse line endings and whitespace runs so cosmetic edits compare equal."""
    if not value:
        return ""
    text = _CRLF.sub("\n", value)
    text = _HORIZONTAL_RUN.sub(" ", text)
    text = _NEWLINE_RUN.sub("\n", text)
    return text.strip()


def contains_placeholder(value: str | None) -> bool:
    """Return ``True`` when ``value`` still carries filler such as TBD or ``[...]``."""
    if not value:
        return False
    return any(pattern.search(value) for pattern in _PLACEHOLDER_PATTERNS)


def contains_marker_pattern(value: str | None) -> bool:
    """Return ``True`` when generator marker syntax leaked into ``value``."""
    if not value:
        return False
    return _MARKER_PATTERN.search(value) is not None


def slugify(value: str | None, *, fallback: str = "step", max_length: int = 40) -> str:
    """Normalize ``value`` into a short filesystem-friendly slug."""
    slug = _SLUG_PATTERN.sub("-", (value or "").strip().lower()).strip("-")
    if not slug:
        slug = fallback
    if len(slug) > max_length:
        slug = slug[:max_length].rstrip("-") or fallback
    return slug
