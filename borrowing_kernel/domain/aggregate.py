"""
BatchAggregateStatusResolver -- one display status for a whole batch.

Responsibility:
    Combine the stored statuses and return schedules of a batch's items
    into the batch-level display status, and fail loudly when the stored
    data breaks the batch invariants.

Architecture position:
    Kernel > Domain -- pure functional core.  Uses the OverdueCalculator.

Invariants enforced:
    - A batch has at least one item.
    - All items of a batch share one stored status, and the batch header's
      cached status equals it.
    - A Borrowed batch is shown as Overdue when any of its items is overdue.

Failure modes:
    - ConsistencyError on an empty batch, on items that disagree, or on a
      header that disagrees with its items.  Never resolved silently.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone, tzinfo
from uuid import UUID

from borrowing_kernel.domain.overdue import HasReturnSchedule, effective_status
from borrowing_kernel.domain.workflow import BorrowingStatus, DisplayStatus
from borrowing_kernel.exceptions import ConsistencyError


def resolve_stored_status(
    items: Sequence[HasReturnSchedule],
    batch_id: UUID | str | None = None,
    header_status: BorrowingStatus | str | None = None,
) -> BorrowingStatus:
    """Shared stored status of *items*.

    Raises:
        ConsistencyError: empty batch, mixed item statuses, or a header
            status that disagrees with the items.
    """
    label = str(batch_id) if batch_id is not None else "<unsaved>"
    if not items:
        raise ConsistencyError(label, (), "batch has no items")

    statuses = sorted({BorrowingStatus(item.status).value for item in items})
    if len(statuses) > 1:
        raise ConsistencyError(
            label, tuple(statuses), "items hold different workflow statuses",
        )

    shared = BorrowingStatus(statuses[0])
    if header_status is not None and BorrowingStatus(header_status) is not shared:
        raise ConsistencyError(
            label,
            (BorrowingStatus(header_status).value, shared.value),
            "batch header status disagrees with its items",
        )
    return shared


def aggregate_status(
    items: Sequence[HasReturnSchedule],
    now: datetime,
    tz: tzinfo = timezone.utc,
    batch_id: UUID | str | None = None,
    header_status: BorrowingStatus | str | None = None,
) -> DisplayStatus:
    """Batch display status as of *now*."""
    shared = resolve_stored_status(items, batch_id, header_status)
    if shared is BorrowingStatus.BORROWED:
        if any(effective_status(item, now, tz) is DisplayStatus.OVERDUE for item in items):
            return DisplayStatus.OVERDUE
    return DisplayStatus.from_stored(shared)
