from datetime import date, datetime, timedelta, timezone

import pytest

from utils.dates import advance_due_date, days_past_due, days_until, period_end


@pytest.mark.parametrize(
    "current, frequency, expected",
    [
        (date(2026, 3, 10), "daily", date(2026, 3, 11)),
        (date(2026, 12, 31), "daily", date(2027, 1, 1)),
        (date(2026, 3, 10), "weekly", date(2026, 3, 17)),
        (date(2024, 1, 1), "monthly", date(2024, 2, 1)),
        (date(2026, 12, 15), "monthly", date(2027, 1, 15)),
        (date(2025, 6, 30), "yearly", date(2026, 6, 30)),
    ],
)
def test_advance_due_date_moves_one_unit(current, frequency, expected):
    assert advance_due_date(current, frequency) == expected


def test_monthly_advance_from_jan_31_clamps_to_end_of_february():
    assert advance_due_date(date(2026, 1, 31), "monthly") == date(2026, 2, 28)
    assert advance_due_date(date(2024, 1, 31), "monthly") == date(2024, 2, 29)


def test_anchor_day_climbs_back_after_short_month():
    feb = advance_due_date(date(2026, 1, 31), "monthly", anchor_day=31)
    assert feb == date(2026, 2, 28)
    assert advance_due_date(feb, "monthly", anchor_day=31) == date(2026, 3, 31)
    assert advance_due_date(date(2026, 3, 31), "monthly", anchor_day=31) == date(2026, 4, 30)


def test_yearly_advance_from_leap_day():
    assert advance_due_date(date(2024, 2, 29), "yearly", anchor_day=29) == date(2025, 2, 28)
    assert advance_due_date(date(2027, 2, 28), "yearly", anchor_day=29) == date(2028, 2, 29)


def test_unknown_frequency_raises():
    with pytest.raises(ValueError):
        advance_due_date(date(2026, 1, 1), "fortnightly")


def test_period_end_by_billing_cycle():
    start = datetime(2026, 1, 31, 10, 0, tzinfo=timezone.utc)
    assert period_end(start, "monthly") == datetime(2026, 2, 28, 10, 0, tzinfo=timezone.utc)
    assert period_end(start, "annual") == datetime(2027, 1, 31, 10, 0, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        period_end(start, "weekly")


def test_days_until_rounds_up_and_goes_negative():
    now = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)
    assert days_until(now + timedelta(days=1, hours=12), now) == 2
    assert days_until(now + timedelta(days=15), now) == 15
    assert days_until(now - timedelta(days=1), now) == -1


def test_days_past_due_never_negative():
    assert days_past_due(date(2026, 1, 10), date(2026, 1, 15)) == 5
    assert days_past_due(date(2026, 1, 20), date(2026, 1, 15)) == 0
