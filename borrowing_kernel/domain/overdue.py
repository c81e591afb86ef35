"""
OverdueCalculator -- derive the display status of a borrowed item.

Responsibility:
    The ONE place that decides whether a borrowed item is overdue.  Every
    read path (snapshots, lists, counts, actionable queues) goes through
    ``effective_status`` so list views and detail views can never disagree.

Architecture position:
    Kernel > Domain -- pure functional core.  ``now`` is always passed in;
    this module never reads the clock.

Invariants enforced:
    - Only Borrowed items can be Overdue; every other stored status is
      shown as-is.
    - The comparison is strict: an item is overdue only once *now* is after
      its expected return.  A date-only expected return is due for the whole
      of that calendar day in the business time zone.
    - A Borrowed item with no expected return is never overdue.
"""

from __future__ import annotations

from datetime import date, datetime, timezone, tzinfo
from typing import Protocol

from borrowing_kernel.domain.workflow import BorrowingStatus, DisplayStatus


class HasReturnSchedule(Protocol):
    status: BorrowingStatus
    expected_return: date | datetime | None


def _aware(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def business_date(now: datetime, tz: tzinfo = timezone.utc) -> date:
    """Calendar date of *now* in the business time zone."""
    return _aware(now).astimezone(tz).date()


def is_past_due(
    expected_return: date | datetime | None,
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> bool:
    if expected_return is None:
        return False
    if isinstance(expected_return, datetime):
        return _aware(now) > _aware(expected_return)
    return business_date(now, tz) > expected_return


def effective_status(
    item: HasReturnSchedule,
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> DisplayStatus:
    """
    Display status of *item* as of *now*.

    Args:
        item: Anything with ``status`` and ``expected_return`` attributes
            (ORM row or snapshot).
        now: Reference instant; naive values are taken as UTC.
        tz: Business time zone used for date-only expected returns.
    """
    status = BorrowingStatus(item.status)
    if status is BorrowingStatus.BORROWED and is_past_due(item.expected_return, now, tz):
        return DisplayStatus.OVERDUE
    return DisplayStatus.from_stored(status)


def days_overdue(
    item: HasReturnSchedule,
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> int:
    """Whole days past the expected return; 0 when not overdue."""
    if effective_status(item, now, tz) is not DisplayStatus.OVERDUE:
        return 0
    expected = item.expected_return
    if isinstance(expected, datetime):
        expected = _aware(expected).astimezone(tz).date()
    return (business_date(now, tz) - expected).days
