"""
Time helpers.

Timestamps are stored as naive UTC (DateTime columns without tz), so every
comparison against a loaded row must use naive UTC as well.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix_seconds(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
