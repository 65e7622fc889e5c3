"""
Menu title normalization.

Maps free-text titles to the canonical cache key and to the file-safe name
used for stored artifacts. Titles that normalize to the same key share one
cache entry.

Examples:
    "Matt's Smoked Ribs" -> "matts smoked ribs"
    "Tacos!"             -> "tacos"
"""

import re

_DISALLOWED = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    """Return the cache key for a menu title.

    Lower-cases, drops everything outside ``[a-z0-9\\s-]``, trims and
    collapses whitespace runs to a single space. A title with no
    alphanumeric characters yields the empty string.
    """
    normalized = _DISALLOWED.sub("", title.lower())
    return _WHITESPACE.sub(" ", normalized.strip())


def to_artifact_name(normalized_key: str) -> str:
    """Turn a normalized key into a file name stem ("smoked ribs" -> "smoked-ribs")."""
    return _WHITESPACE.sub("-", normalized_key)
