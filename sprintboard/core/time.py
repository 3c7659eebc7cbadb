"""Time helpers shared across services."""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes from upstream payloads as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
