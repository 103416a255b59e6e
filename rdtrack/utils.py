"""Shared utility functions used across rdtrack modules."""
from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any, Iterable


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store naive UTC."""
    return datetime.now(UTC).replace(tzinfo=None)


def parse_datetime(value: Any) -> datetime | None:
    """Coerce an ISO string, date or datetime to a naive UTC datetime.

    Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed


def split_csv(value: str | Iterable[str] | None) -> list[str]:
    """Flatten a comma-joined string (or list of them) into trimmed, non-empty items."""
    if not value:
        return []
    parts = [value] if isinstance(value, str) else list(value)
    return [s.strip() for p in parts for s in str(p).split(",") if s.strip()]


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
