"""UTC time helpers.

All timestamps are stored and compared in UTC. Some backends (SQLite) hand
back naive datetimes; ``as_utc`` re-attaches the UTC zone.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise ``value`` to an aware UTC datetime."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
