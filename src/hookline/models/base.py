"""Shared helpers for Hookline models."""

from __future__ import annotations

import secrets
from datetime import UTC, datetime


def generate_id(prefix: str, nbytes: int = 8) -> str:
    """Generate a random ID with the given prefix.

    Examples:
        generate_id("whk") -> "whk_a1b2c3d4e5f60718"
        generate_id("dlv") -> "dlv_0f1e2d3c4b5a6978"
    """
    return f"{prefix}_{secrets.token_hex(nbytes)}"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def truncate(text: str | None, limit: int) -> str | None:
    """Truncate text to at most ``limit`` characters (None stays None)."""
    if text is None:
        return None
    return text[:limit]
