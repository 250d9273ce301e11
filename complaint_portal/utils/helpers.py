"""Shared datetime and request-parsing helpers.

as_utc / utcnow:   one definition of "now" and of naive-datetime handling
parse_datetime:    ISO-8601 strings from request bodies (None on bad input)
isoformat:         None-safe serialisation used by every ``to_dict``
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    All comparisons against ``utcnow()`` must go through this helper so the same
    code works in both environments.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat(dt: datetime | None) -> str | None:
    normalised = as_utc(dt)
    return normalised.isoformat() if normalised else None


def parse_datetime(value) -> datetime | None:
    """Parse an ISO-8601 timestamp. Accepts a trailing ``Z``.

    Returns None for empty or unparseable input.
    """
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return as_utc(parsed)


def like_pattern(term: str) -> str:
    """Substring LIKE pattern whose wildcards are escaped with a backslash."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
