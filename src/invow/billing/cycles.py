"""
Billing cycle calculations.

Cycles reset on the subscription anchor's day-of-month. An anchor day that
does not exist in a given month (29-31) is clamped to that month's last day.
"""

from calendar import monthrange
from datetime import date, datetime

CYCLE_FORMAT = "%Y-%m-%d"


def _clamped_day(year: int, month: int, day: int) -> int:
    return min(day, monthrange(year, month)[1])


def _previous_month(year: int, month: int) -> tuple[int, int]:
    if month == 1:
        return year - 1, 12
    return year, month - 1


def _next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def cycle_start(anchor: datetime, now: datetime) -> date:
    """Return the calendar date on which the cycle containing ``now`` began."""
    day = _clamped_day(now.year, now.month, anchor.day)
    if now.day >= day:
        return date(now.year, now.month, day)

    year, month = _previous_month(now.year, now.month)
    return date(year, month, _clamped_day(year, month, anchor.day))


def current_cycle(anchor: datetime, now: datetime) -> str:
    """
    Identify the billing cycle that contains ``now``.

    Args:
        anchor: Subscription start date; only its day-of-month matters
        now: Reference time

    Returns:
        Cycle id formatted as ``YYYY-MM-DD``, e.g. anchor 2024-01-15 and
        now 2024-01-10 gives ``"2023-12-15"``
    """
    return cycle_start(anchor, now).strftime(CYCLE_FORMAT)


def next_reset_date(anchor: datetime, now: datetime) -> datetime:
    """
    Next midnight on the anchor's day-of-month strictly after ``now``.

    The result carries ``now``'s timezone.
    """
    year, month = now.year, now.month
    candidate = now.replace(
        day=_clamped_day(year, month, anchor.day), hour=0, minute=0, second=0, microsecond=0
    )
    if candidate > now:
        return candidate

    year, month = _next_month(year, month)
    return now.replace(
        year=year,
        month=month,
        day=_clamped_day(year, month, anchor.day),
        hour=0,
        minute=0,
        second=0,
        microsecond=0,
    )


__all__ = ["CYCLE_FORMAT", "cycle_start", "current_cycle", "next_reset_date"]
