import calendar
from datetime import datetime, timedelta

_ONE_MICROSECOND = timedelta(microseconds=1)
DAY = timedelta(days=1)
HOUR = timedelta(hours=1)


def add_months(value: datetime, months: int) -> datetime:
    """
    Calendar month addition. The day is clamped to the last day of the
    target month, so Jan 31 + 1 month is Feb 29 in a leap year.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def ceil_units(remaining: timedelta, unit: timedelta) -> int:
    """Number of whole-or-partial units in remaining; negative clamps to 0."""
    if remaining <= timedelta(0):
        return 0
    micros = remaining // _ONE_MICROSECOND
    unit_micros = unit // _ONE_MICROSECOND
    return -(-micros // unit_micros)
