"""UTC helpers.

SQLite hands back naive datetimes even for timezone-aware columns, so every
value read from the database goes through as_utc() before comparison.
"""

from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return value as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(ts):
    """Unix seconds -> aware UTC datetime, or None for missing/zero."""
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)
