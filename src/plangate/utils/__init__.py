"""Utility helpers for plangate."""

from .text import contains_marker_pattern, contains_placeholder, normalize_whitespace, slugify

__all__ = [
    "contains_marker_pattern",
    "contains_placeholder",
    "normalize_whitespace",
    "slugify",
]
