"""Clock-string and calendar helpers shared by the rule, availability and weekly modules.

Clock times are plain local "HH:MM" strings and rota dates are timezone-naive
calendar dates. Overnight shifts (end before start) are handled arithmetically
by adding 24 hours to the end; no timezone conversion ever happens here.
"""

from __future__ import annotations

import datetime
from typing import Optional, Tuple

from logger import get_logger

logger = get_logger(__name__)

MINUTES_PER_DAY = 24 * 60
WEEKDAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
SATURDAY = 5
SUNDAY = 6


def _clock_minutes(value: Optional[str]) -> Optional[int]:
    if not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) != 2:
        return None
    hour_str, minute_str = parts
    if not hour_str.isdecimal() or not minute_str.isdecimal():
        return None
    hours = int(hour_str)
    minutes = int(minute_str)
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def parse_clock(value: Optional[str]) -> Optional[int]:
    """Return minutes since midnight for an "HH:MM" label, or None when malformed."""
    minutes = _clock_minutes(value)
    if minutes is None:
        logger.warning("Invalid time value: %r", value)
    return minutes


def is_valid_clock(value: Optional[str]) -> bool:
    return _clock_minutes(value) is not None


def _normalized_range(start: Optional[str], end: Optional[str]) -> Optional[Tuple[int, int]]:
    start_min = parse_clock(start)
    end_min = parse_clock(end)
    if start_min is None or end_min is None:
        return None
    if end_min < start_min:
        end_min += MINUTES_PER_DAY
    return start_min, end_min


def shift_hours(start: Optional[str], end: Optional[str]) -> float:
    """Duration in hours, wrapping past midnight. Malformed bounds count as zero hours."""
    window = _normalized_range(start, end)
    if window is None:
        logger.warning("Treating shift %r-%r as zero-duration", start, end)
        return 0.0
    start_min, end_min = window
    return (end_min - start_min) / 60


def overlaps(a_start: Optional[str], a_end: Optional[str], b_start: Optional[str], b_end: Optional[str]) -> bool:
    first = _normalized_range(a_start, a_end)
    second = _normalized_range(b_start, b_end)
    if first is None or second is None:
        return False
    return first[0] < second[1] and second[0] < first[1]


def as_date(value: datetime.date | datetime.datetime) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    raise TypeError("Rota dates must be date or datetime instances.")


def week_start(date_value: datetime.date | datetime.datetime) -> datetime.date:
    """Return the Monday for the provided date."""
    day = as_date(date_value)
    weekday = day.weekday()
    if weekday == 0:
        return day
    return day - datetime.timedelta(days=weekday)


def week_bounds(date_value: datetime.date | datetime.datetime) -> Tuple[datetime.date, datetime.date]:
    """Half-open [monday, next monday) span of the week containing ``date_value``."""
    start = week_start(date_value)
    return start, start + datetime.timedelta(days=7)


def is_weekend(date_value: datetime.date | datetime.datetime) -> bool:
    return as_date(date_value).weekday() in (SATURDAY, SUNDAY)


def previous_weekend(date_value: datetime.date | datetime.datetime) -> Tuple[datetime.date, datetime.date]:
    """Saturday and Sunday of the weekend before the one containing ``date_value``."""
    day = as_date(date_value)
    weekday = day.weekday()
    if weekday == SUNDAY:
        saturday = day - datetime.timedelta(days=8)
    elif weekday == SATURDAY:
        saturday = day - datetime.timedelta(days=7)
    else:
        # Weekdays: the most recent weekend.
        saturday = day - datetime.timedelta(days=weekday + 2)
    return saturday, saturday + datetime.timedelta(days=1)


def _as_datetime(value: datetime.date | datetime.datetime) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return value
    return datetime.datetime.combine(value, datetime.time.min)


def hours_between(earlier: datetime.date | datetime.datetime, later: datetime.date | datetime.datetime) -> float:
    """Elapsed hours from ``earlier`` to ``later``; plain dates are read as midnight."""
    delta = _as_datetime(later) - _as_datetime(earlier)
    return delta.total_seconds() / 3600


def day_label(date_value: datetime.date | datetime.datetime) -> str:
    day = as_date(date_value)
    return f"{WEEKDAY_NAMES[day.weekday()]} {day.day}"


def format_hours(value: float) -> str:
    return f"{round(value, 2):g}"
