"""
Timestamp helpers.

The database stores timestamps as ``YYYY-MM-DD HH:MM:SS`` text in UTC
(SQLite CURRENT_TIMESTAMP). Everything leaving the process is RFC 3339 UTC.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

DB_FORMAT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_db_timestamp(value: str | None) -> datetime | None:
    """Parse a database timestamp as UTC; None on empty or malformed input."""
    if not value:
        return None
    try:
        parsed = datetime.strptime(value.strip()[:19], DB_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Render ``value`` in UTC database format (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(DB_FORMAT)


def to_rfc3339(value: datetime | None) -> str | None:
    """RFC 3339 UTC string (``2024-01-02T03:04:05Z``) or None."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def days_from_now(days: int) -> datetime:
    if days <= 0:
        raise ValueError("Number of days should be > 0")
    return (utcnow() + timedelta(days=days)).replace(microsecond=0)


def is_expired(expiration: datetime | None, now: datetime | None = None) -> bool:
    """True when ``expiration`` is set and already in the past."""
    if expiration is None:
        return False
    return (now or utcnow()) > expiration
