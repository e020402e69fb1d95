"""
Time helpers for run timestamps and timer durations.

All persisted timestamps are UTC ISO8601 strings. Durations are whole
minutes, matching the granularity of the external timer surface.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """
    Format a timestamp for persistence and event emission.

    Args:
        ts: Timestamp to format; naive values are treated as UTC

    Returns:
        ISO8601 formatted string
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO8601 string written by format_timestamp."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def minutes_to_iso_duration(minutes: int) -> str:
    """
    Convert whole minutes to an ISO8601 duration for timer requests.

    Args:
        minutes: Positive number of minutes

    Returns:
        Duration string such as "PT3M"
    """
    if minutes <= 0:
        raise ValueError(f"Duration must be positive, got {minutes}")
    return f"PT{minutes}M"


def time_elapsed_seconds(start_time: datetime, end_time: Optional[datetime] = None) -> float:
    """
    Calculate elapsed time in seconds between two timestamps.

    Args:
        start_time: Start timestamp
        end_time: End timestamp, defaults to now

    Returns:
        Elapsed time in seconds
    """
    if end_time is None:
        end_time = utc_now()

    return (end_time - start_time).total_seconds()
