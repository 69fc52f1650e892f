"""
Time helpers.

Every component that needs "now" takes a clock callable so tests can pin
time. Month arithmetic clamps the day to the length of the target month
(31 March minus one month is 28/29 February).
"""

import calendar
from datetime import date, datetime, timezone
from typing import Callable, TypeVar
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]

_D = TypeVar("_D", date, datetime)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def local_clock(tz_name: str) -> Clock:
    """Build a clock returning aware datetimes in the given timezone."""
    tz = ZoneInfo(tz_name)

    def _now() -> datetime:
        return datetime.now(tz)

    return _now


def subtract_months(value: _D, months: int) -> _D:
    """Move a date/datetime back by whole calendar months."""
    month_index = value.year * 12 + (value.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def as_date(value: date) -> date:
    """Drop the time part of a datetime; dates pass through."""
    if isinstance(value, datetime):
        return value.date()
    return value
