"""Shared utility functions used by services and blueprints.

utcnow:          timezone-aware "now" used for every timestamp column
as_utc:          normalise naive datetimes read back from SQLite
parse_datetime:  ISO parsing that returns None on bad input
parse_int_arg:   bounded integer query-string parsing
"""
from datetime import date, datetime, time, timezone


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return *value* as an aware UTC datetime (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value):
    return as_utc(value).isoformat() if value else None


def parse_datetime(value, end_of_day=False):
    """Parse an ISO date or datetime string into an aware UTC datetime.

    Returns None for empty/invalid input. A bare date resolves to the
    start of that day, or its last microsecond when ``end_of_day`` is set.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.max if end_of_day else time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        if len(text) == 10:
            parsed = date.fromisoformat(text)
            return datetime.combine(parsed, time.max if end_of_day else time.min, tzinfo=timezone.utc)
        return as_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        return None


def parse_int_arg(raw, default, minimum=None, maximum=None):
    """Parse a query-string integer, falling back to *default* and clamping."""
    try:
        value = int(raw) if raw not in (None, "") else default
    except (ValueError, TypeError):
        value = default
    if minimum is not None:
        value = max(value, minimum)
    if maximum is not None:
        value = min(value, maximum)
    return value
