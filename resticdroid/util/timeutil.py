"""Utility functions for time operations."""

import re
from datetime import datetime
from typing import Union

_FRACTION = re.compile(r"\.(\d+)")


def format_elapsed(seconds: Union[int, float]) -> str:
    """Format elapsed seconds as MM:SS, or HH:MM:SS past one hour."""
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)

    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def parse_restic_time(value: str) -> datetime:
    """Parse a restic snapshot timestamp.

    restic emits nanosecond precision (``2024-05-01T10:00:00.123456789+02:00``)
    which ``datetime.fromisoformat`` does not accept, so the fraction is cut
    to microseconds first.
    """
    text = value.strip().replace("Z", "+00:00")
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)

    try:
        return datetime.fromisoformat(text)
    except ValueError as e:
        raise ValueError(f"Unable to parse timestamp: {value}") from e
