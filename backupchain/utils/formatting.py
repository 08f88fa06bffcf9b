"""
Human-readable formatting of sizes, durations and timestamps.
"""

from datetime import datetime, timedelta
from typing import Union

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'


def format_bytes(num_bytes: int) -> str:
    """Format a byte count as e.g. '1.50 MB'."""
    size = float(num_bytes)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if size < 1024 or unit == 'TB':
            if unit == 'B':
                return f"{int(size)} B"
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"


def format_duration(duration: Union[int, float, timedelta]) -> str:
    """Format a duration (seconds or timedelta) as e.g. '1h 5m 3s'."""
    if isinstance(duration, timedelta):
        seconds = int(duration.total_seconds())
    else:
        seconds = int(duration)

    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)

    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_timestamp(value: datetime) -> str:
    """Format a local datetime as 'YYYY-MM-DD HH:MM:SS'."""
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """
    Parse a 'YYYY-MM-DD HH:MM:SS' local timestamp.

    Raises:
        ValueError: If the string does not match the format
    """
    return datetime.strptime(value, TIMESTAMP_FORMAT)


def truncate_to_seconds(value: datetime) -> datetime:
    """Drop sub-second precision so values survive a format/parse round trip."""
    return value.replace(microsecond=0)
