"""
Usage Period - CreativeWriter
Calendar-month usage windows. Pure functions plus one helper that applies a
rollover to a subscription in memory; persisting is the caller's job.

Month arithmetic clamps to the last day of the target month, so a window that
starts on Jan 31 ends on Feb 28 (Feb 29 in leap years).
"""

from datetime import datetime
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta

from creativewriter.db.utils import utcnow


def add_months(dt: datetime, months: int) -> datetime:
    return dt + relativedelta(months=months)


def add_years(dt: datetime, years: int) -> datetime:
    return dt + relativedelta(years=years)


def should_reset(period_end: datetime, now: datetime) -> bool:
    """True once the window is over (strictly after its end)."""
    return now > period_end


def next_period(now: datetime) -> Tuple[datetime, datetime]:
    return now, add_months(now, 1)


def check_and_reset_usage(subscription, now: Optional[datetime] = None) -> bool:
    """
    Zero all usage counters and start a fresh window at ``now`` if the current
    window has ended. Returns True when a reset happened.

    Idempotent: a second call with the same ``now`` is a no-op because the new
    window ends a month later.
    """
    now = now or utcnow()
    if not should_reset(subscription.period_end, now):
        return False
    start, end = next_period(now)
    subscription.reset_usage(start, end)
    return True
