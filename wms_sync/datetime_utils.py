"""
DateTime utility functions for the application.

Timestamps are stored as naive UTC datetimes.
"""
from datetime import datetime, timezone


def utcnow():
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_datetime_iso(dt):
    """
    Format a stored (naive UTC) datetime as an ISO 8601 string with a Z suffix.

    Returns None if dt is None.
    """
    if not dt:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat() + "Z"


def parse_datetime(value):
    """
    Parse an ISO string or datetime into a naive UTC datetime.

    Args:
        value: datetime, ISO string (with or without offset / Z), or None

    Returns:
        datetime or None if the value is empty or cannot be parsed
    """
    if not value:
        return None

    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            return None

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt
