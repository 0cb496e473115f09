"""
utils/dates.py
--------------
Calendar arithmetic for due dates and billing periods.
"""

import math
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta

FREQUENCIES = ("daily", "weekly", "monthly", "yearly")
BILLING_CYCLES = ("monthly", "annual")


def utcnow() -> datetime:
    """Timezone-aware current time. Services take this as their default clock."""
    return datetime.now(timezone.utc)


def advance_due_date(current: date, frequency: str, anchor_day: Optional[int] = None) -> date:
    """
    Move a due date forward by exactly one frequency unit.

    Monthly and yearly steps are calendar steps: when the target month is
    shorter the result is clamped to its last day (Jan 31 -> Feb 28/29).
    ``anchor_day`` is the obligation's original day of month; passing it
    lets a clamped date climb back (Feb 28 -> Mar 31) instead of drifting.

    Raises:
        ValueError: On an unknown frequency.
    """
    if frequency == "daily":
        return current + timedelta(days=1)
    if frequency == "weekly":
        return current + timedelta(weeks=1)
    if frequency == "monthly":
        if anchor_day:
            # relativedelta clamps an absolute day to the month's last day
            return current + relativedelta(months=1, day=anchor_day)
        return current + relativedelta(months=1)
    if frequency == "yearly":
        if anchor_day:
            return current + relativedelta(years=1, day=anchor_day)
        return current + relativedelta(years=1)
    raise ValueError(f"Unknown frequency: {frequency!r}")


def period_end(start: datetime, billing_cycle: str) -> datetime:
    """End of a billing period that starts at ``start``."""
    if billing_cycle == "annual":
        return start + relativedelta(years=1)
    if billing_cycle == "monthly":
        return start + relativedelta(months=1)
    raise ValueError(f"Unknown billing cycle: {billing_cycle!r}")


def days_until(moment: datetime, now: datetime) -> int:
    """Whole days from ``now`` until ``moment``, rounded up; negative once past."""
    return math.ceil((moment - now).total_seconds() / 86400)


def days_past_due(due: date, today: date) -> int:
    return max(0, (today - due).days)
