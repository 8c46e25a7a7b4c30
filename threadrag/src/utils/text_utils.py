"""
ThreadRAG - Text Utilities
===========================
Small helpers for excerpting, timestamp rendering and the approximate
token accounting used in query performance reports.

These utilities should remain stateless and side-effect-free.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone

_ELLIPSIS = "..."

# Rough chars-per-token ratio for English text.  This is an *estimate*
# reported for observability only; it is not a billing figure.
_CHARS_PER_TOKEN = 4


# ── Public API ─────────────────────────────────────────────────────────

def excerpt(text: str, limit: int) -> str:
    """
    Trim *text* to at most *limit* characters, marking the cut with ``...``.

    Examples::

        excerpt("short", 200)        → "short"
        excerpt("x" * 250, 200)      → "x" * 197 + "..."
    """
    if len(text) <= limit:
        return text
    if limit <= len(_ELLIPSIS):
        return text[:limit]
    return text[: limit - len(_ELLIPSIS)] + _ELLIPSIS


def truncate_with_ellipsis(text: str, budget: int) -> str:
    """Cut *text* at *budget* characters and append ``...`` if anything was removed."""
    if len(text) <= budget:
        return text
    return text[:budget] + _ELLIPSIS


def estimate_tokens(prompt: str, response: str) -> int:
    """Approximate token usage as ``ceil((len(prompt) + len(response)) / 4)``."""
    return math.ceil((len(prompt) + len(response)) / _CHARS_PER_TOKEN)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by MongoDB) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_timestamp(value: datetime) -> str:
    """Human-readable UTC timestamp used in archives and prompts."""
    return ensure_utc(value).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_date(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y-%m-%d")
