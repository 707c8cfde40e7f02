"""
Time helpers. All stored timestamps are naive UTC datetimes.
"""
from datetime import datetime, timezone


def utcnow():
    """Current UTC time as a naive datetime (matches DB DateTime columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value):
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
