"""Duration parsing utilities."""

import re
from datetime import timedelta

from optiq.types import Duration

_DURATION_PATTERN = re.compile(r"^(\d+)(ms|s|m|h|d)$")
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_duration(duration: Duration) -> int:
    """Parse a duration to milliseconds.

    Accepts "500ms", "30s", "5m", "2h", "1d", a ``timedelta``, or an int
    that is already in milliseconds.
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, int):
        if duration < 0:
            raise ValueError(f"Invalid duration: {duration!r}")
        return duration
    if isinstance(duration, timedelta):
        return int(duration.total_seconds() * 1000)

    match = _DURATION_PATTERN.match(duration)
    if not match:
        raise ValueError(f"Invalid duration: {duration!r}")

    value, unit = match.groups()
    return int(value) * _UNITS[unit]


def backoff_delay(attempt: int, *, base: Duration = "1s", cap: Duration = "30s") -> int:
    """Exponential retry delay in ms: ``min(base * 2**attempt, cap)``."""
    return min(parse_duration(base) * 2**attempt, parse_duration(cap))
