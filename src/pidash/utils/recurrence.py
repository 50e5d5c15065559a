"""Weekly recurrence math for power schedules.

A schedule fires at a wall-clock time of day on a set of weekdays. The
next fire instant is computed directly from (time, weekdays) rather than
through a cron expression.

Weekday numbering follows the dashboard: 0=Sunday ... 6=Saturday. Python's
``datetime.weekday()`` uses 0=Monday, so conversions go through
``sunday_weekday()``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime, time, timedelta

__all__ = [
    "MAX_LOOKAHEAD_DAYS",
    "next_fire_time",
    "parse_time",
    "sunday_weekday",
]

#: One full week plus a day covers every (time, weekday) combination.
MAX_LOOKAHEAD_DAYS = 8

_TIME_RE = re.compile(r"^(\d{2}):(\d{2})$")


def parse_time(value: str) -> time:
    """Parse a 24-hour ``HH:MM`` string.

    Raises:
        ValueError: Not two-digit hours and minutes, or out of range.

    Example:
        >>> parse_time("07:30")
        datetime.time(7, 30)
    """
    match = _TIME_RE.match(value) if isinstance(value, str) else None
    if match is None:
        raise ValueError(f"time must be HH:MM, got {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"time out of range: {value!r}")
    return time(hour, minute)


def sunday_weekday(moment: datetime) -> int:
    """Weekday of ``moment`` with 0=Sunday."""
    return (moment.weekday() + 1) % 7


def next_fire_time(
    time_of_day: time | str,
    weekdays: Iterable[int],
    after: datetime,
) -> datetime:
    """First instant strictly after ``after`` matching the schedule.

    The result has the same tzinfo as ``after`` (naive in, naive out) and
    seconds set to zero.

    Args:
        time_of_day: Fire time, as a time or ``HH:MM`` string.
        weekdays: Days to fire on, 0=Sunday.
        after: Reference instant, usually now.

    Raises:
        ValueError: Empty weekday set or bad time.
    """
    if isinstance(time_of_day, str):
        time_of_day = parse_time(time_of_day)
    days = set(weekdays)
    if not days:
        raise ValueError("weekdays must not be empty")

    for offset in range(MAX_LOOKAHEAD_DAYS):
        day = after + timedelta(days=offset)
        candidate = day.replace(
            hour=time_of_day.hour,
            minute=time_of_day.minute,
            second=0,
            microsecond=0,
        )
        if candidate > after and sunday_weekday(candidate) in days:
            return candidate

    raise ValueError(f"no fire time within {MAX_LOOKAHEAD_DAYS} days for {sorted(days)}")
