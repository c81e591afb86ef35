"""
Data transfer objects for the borrowing domain.

These are pure frozen dataclasses with no ORM dependencies.  Services
translate ORM rows into snapshots before returning them so callers never
hold a live session-bound object.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from types import MappingProxyType
from uuid import UUID

from borrowing_kernel.domain.workflow import (
    BorrowingStatus,
    DisplayStatus,
    ReturnCondition,
    WorkflowAction,
)


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ItemPayload:
    """Per-item data supplied with a Release or Return request."""

    serial_number: str | None = None
    expected_return: date | None = None
    condition: ReturnCondition | None = None
    notes: str | None = None


@dataclass(frozen=True)
class TransitionPayload:
    """
    Optional data accompanying a workflow action.

    ``items`` carries per-item data keyed by item id.  ``item_ids`` selects
    a subset of items for an Extend; an empty selection means every item.
    """

    notes: str | None = None
    reason: str | None = None
    actual_return: datetime | None = None
    new_expected_return: date | None = None
    items: Mapping[UUID, ItemPayload] = field(default_factory=dict)
    item_ids: tuple[UUID, ...] = ()
    idempotency_key: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "items", MappingProxyType(dict(self.items)))
        object.__setattr__(self, "item_ids", tuple(self.item_ids))

    def note_text(self, action: WorkflowAction) -> str | None:
        """Text recorded on the stage columns and the audit entry."""
        if action in (WorkflowAction.CANCEL, WorkflowAction.EXTEND):
            return (self.reason or "").strip() or None
        return (self.notes or "").strip() or None


@dataclass(frozen=True)
class NewItemSpec:
    """One equipment line on a new borrowing request."""

    asset_id: UUID
    quantity: int = 1
    serial_number: str | None = None
    expected_return: date | None = None
    notes: str | None = None


@dataclass(frozen=True)
class NewBatchRequest:
    """
    A Maker's borrowing submission.

    ``expected_return`` is the batch-wide default applied to items that do
    not carry their own date.
    """

    borrower_name: str
    items: tuple[NewItemSpec, ...]
    borrower_contact: str | None = None
    borrower_project: str | None = None
    purpose: str | None = None
    expected_return: date | None = None
    idempotency_key: str | None = None


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ItemSnapshot:
    """Read-only view of one borrowed item."""

    item_id: UUID
    asset_id: UUID
    position: int
    quantity: int
    status: BorrowingStatus
    display_status: DisplayStatus
    serial_number: str | None = None
    expected_return: date | None = None
    actual_return: datetime | None = None
    condition: ReturnCondition | None = None
    notes: str | None = None

    @property
    def is_overdue(self) -> bool:
        return self.display_status is DisplayStatus.OVERDUE


@dataclass(frozen=True)
class StageStamp:
    """Who performed a workflow stage, when, and with what notes."""

    actor_id: UUID
    at: datetime
    notes: str | None = None


@dataclass(frozen=True)
class AuditEntrySnapshot:
    """Read-only view of one workflow audit entry."""

    entry_id: UUID
    batch_id: UUID
    seq: int
    action: WorkflowAction
    actor_id: UUID
    actor_role: str
    from_status: BorrowingStatus | None
    to_status: BorrowingStatus
    occurred_at: datetime
    notes: str | None
    idempotency_key: str | None
    hash: str
    payload: Mapping = field(default_factory=dict)


@dataclass(frozen=True)
class BatchSnapshot:
    """
    Read-only view of a borrowing batch as returned by the engine and
    the selectors.

    ``status`` is the stored status; ``display_status`` adds the derived
    Overdue as of the time the snapshot was taken.
    """

    batch_id: UUID
    batch_reference: str
    borrower_name: str
    status: BorrowingStatus
    display_status: DisplayStatus
    created_by_id: UUID
    created_at: datetime
    items: tuple[ItemSnapshot, ...]
    version: int
    borrower_contact: str | None = None
    borrower_project: str | None = None
    purpose: str | None = None
    verified: StageStamp | None = None
    approved: StageStamp | None = None
    released: StageStamp | None = None
    returned: StageStamp | None = None
    canceled: StageStamp | None = None
    recent_audit: tuple[AuditEntrySnapshot, ...] = ()
    as_of: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_overdue(self) -> bool:
        return self.display_status is DisplayStatus.OVERDUE

    @property
    def item_count(self) -> int:
        return len(self.items)

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def earliest_expected_return(self) -> date | None:
        dates = [i.expected_return for i in self.items if i.expected_return is not None]
        return min(dates) if dates else None

    def item(self, item_id: UUID) -> ItemSnapshot:
        for snapshot in self.items:
            if snapshot.item_id == item_id:
                return snapshot
        raise KeyError(item_id)
