"""Helpers shared between the memory and postgres store implementations."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively; store and look up the folded form."""
    return (email or "").strip().lower()


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes coming back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.

    Args:
        row: Row data (dict-like or object)
        key: Key/attribute name
        default: Default value if not found

    Returns:
        Extracted value or default
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default
