"""
Time helpers.

Everything is stored and compared in UTC. Some backends (SQLite) hand back
naive datetimes for timezone-aware columns, so values read from storage go
through ``as_utc`` before they are compared with aware ones.
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_z(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 in UTC with a trailing ``Z`` (the wire format for timestamps)."""
    value = as_utc(value)
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")
