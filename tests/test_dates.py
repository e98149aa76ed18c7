"""
Tests for calendar arithmetic and remaining-time counters
"""
from datetime import datetime, timedelta, timezone

from models.subscription import PlanType, subscription_end_at
from utils.dates import DAY, HOUR, add_months, ceil_units

UTC = timezone.utc


def test_month_end_clamps_to_leap_day():
    start = datetime(2024, 1, 31, 10, 30, tzinfo=UTC)
    assert add_months(start, 1) == datetime(2024, 2, 29, 10, 30, tzinfo=UTC)


def test_month_end_clamps_outside_leap_year():
    assert add_months(datetime(2023, 1, 31, tzinfo=UTC), 1) == datetime(2023, 2, 28, tzinfo=UTC)


def test_months_roll_over_the_year():
    assert add_months(datetime(2024, 11, 15, tzinfo=UTC), 3) == datetime(2025, 2, 15, tzinfo=UTC)


def test_annual_from_leap_day():
    assert subscription_end_at(PlanType.ANNUAL, datetime(2024, 2, 29, tzinfo=UTC)) == datetime(2025, 2, 28, tzinfo=UTC)


def test_plan_period_end():
    paid_at = datetime(2024, 3, 15, 9, 0, tzinfo=UTC)
    assert subscription_end_at(PlanType.MONTHLY, paid_at) == datetime(2024, 4, 15, 9, 0, tzinfo=UTC)
    assert subscription_end_at("annual", paid_at) == datetime(2025, 3, 15, 9, 0, tzinfo=UTC)


def test_ceil_units_rounds_partial_units_up():
    assert ceil_units(timedelta(days=14, hours=12), DAY) == 15
    assert ceil_units(timedelta(hours=12), DAY) == 1
    assert ceil_units(timedelta(microseconds=1), HOUR) == 1
    assert ceil_units(timedelta(days=2), DAY) == 2


def test_ceil_units_clamps_negative_to_zero():
    assert ceil_units(timedelta(0), DAY) == 0
    assert ceil_units(timedelta(seconds=-5), HOUR) == 0
