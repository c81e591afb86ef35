"""
Module: borrowing_kernel.selectors.batch_selector
Responsibility: Read-side queries over borrowing batches: snapshots, filtered
    lists, workflow timelines, overdue counts, status statistics, and the
    per-role "awaiting my action" queue.
Architecture position: Kernel > Selectors.  Read-only.

Invariants enforced:
    - Every display status is derived through the OverdueCalculator and the
      aggregate resolver; SQL filters on Overdue use the same rule (a
      Borrowed item whose expected return is before the business date).
    - Nothing stored is changed by a read, and no row is locked.

Failure modes:
    - ConsistencyError when a loaded batch violates the batch invariants.
"""

from collections.abc import Sequence
from datetime import datetime, timezone, tzinfo
from uuid import UUID

from sqlalchemy import ColumnElement, func, select
from sqlalchemy.orm import Session

from borrowing_kernel.domain.aggregate import aggregate_status
from borrowing_kernel.domain.authorization import RoleAuthorizationMatrix
from borrowing_kernel.domain.dtos import (
    AuditEntrySnapshot,
    BatchSnapshot,
    ItemSnapshot,
    StageStamp,
)
from borrowing_kernel.domain.overdue import business_date, effective_status
from borrowing_kernel.domain.roles import ActorRole
from borrowing_kernel.domain.workflow import (
    BORROWING_WORKFLOW,
    BorrowingStatus,
    DisplayStatus,
    ReturnCondition,
    WorkflowAction,
)
from borrowing_kernel.models.audit_entry import WorkflowAuditEntry
from borrowing_kernel.models.batch import BorrowingBatch, BorrowingItem
from borrowing_kernel.selectors.base import BaseSelector

# Actions that move a batch forward; these make up a role's work queue.
QUEUE_ACTIONS: tuple[WorkflowAction, ...] = (
    WorkflowAction.VERIFY,
    WorkflowAction.APPROVE,
    WorkflowAction.RELEASE,
    WorkflowAction.RETURN,
)


# ---------------------------------------------------------------------------
# ORM -> DTO
# ---------------------------------------------------------------------------


def audit_to_snapshot(entry: WorkflowAuditEntry) -> AuditEntrySnapshot:
    return AuditEntrySnapshot(
        entry_id=entry.id,
        batch_id=entry.batch_id,
        seq=entry.seq,
        action=entry.action,
        actor_id=entry.actor_id,
        actor_role=entry.actor_role,
        from_status=entry.from_status,
        to_status=entry.to_status,
        occurred_at=entry.occurred_at,
        notes=entry.notes,
        idempotency_key=entry.idempotency_key,
        hash=entry.hash,
        payload=dict(entry.payload or {}),
    )


def item_to_snapshot(
    item: BorrowingItem,
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> ItemSnapshot:
    return ItemSnapshot(
        item_id=item.id,
        asset_id=item.asset_id,
        position=item.position,
        quantity=item.quantity,
        status=item.status,
        display_status=effective_status(item, now, tz),
        serial_number=item.serial_number,
        expected_return=item.expected_return,
        actual_return=item.actual_return,
        condition=ReturnCondition(item.condition) if item.condition else None,
        notes=item.notes,
    )


def _stamp(actor_id: UUID | None, at: datetime | None, notes: str | None) -> StageStamp | None:
    if actor_id is None or at is None:
        return None
    return StageStamp(actor_id=actor_id, at=at, notes=notes)


def batch_to_snapshot(
    batch: BorrowingBatch,
    now: datetime,
    tz: tzinfo = timezone.utc,
    audit_entries: Sequence[WorkflowAuditEntry] = (),
) -> BatchSnapshot:
    """Snapshot of *batch* as of *now*.

    Raises:
        ConsistencyError: the batch breaks the shared-status invariants.
    """
    display = aggregate_status(
        batch.items, now, tz, batch_id=batch.id, header_status=batch.status,
    )
    return BatchSnapshot(
        batch_id=batch.id,
        batch_reference=batch.batch_reference,
        borrower_name=batch.borrower_name,
        status=batch.status,
        display_status=display,
        created_by_id=batch.created_by_id,
        created_at=batch.created_at,
        items=tuple(item_to_snapshot(item, now, tz) for item in batch.items),
        version=batch.version,
        borrower_contact=batch.borrower_contact,
        borrower_project=batch.borrower_project,
        purpose=batch.purpose,
        verified=_stamp(batch.verified_by_id, batch.verified_at, batch.verification_notes),
        approved=_stamp(batch.approved_by_id, batch.approved_at, batch.approval_notes),
        released=_stamp(batch.released_by_id, batch.released_at, batch.release_notes),
        returned=_stamp(batch.returned_by_id, batch.returned_at, batch.return_notes),
        canceled=_stamp(batch.canceled_by_id, batch.canceled_at, batch.cancellation_reason),
        recent_audit=tuple(audit_to_snapshot(e) for e in audit_entries),
        as_of=now,
    )


# ---------------------------------------------------------------------------
# Selector
# ---------------------------------------------------------------------------


class BatchSelector(BaseSelector[BorrowingBatch]):
    """
    Read-only queries over borrowing batches.

    ``tz`` is the business time zone used to decide when a date-only
    expected return has passed.
    """

    def __init__(
        self,
        session: Session,
        tz: tzinfo = timezone.utc,
        recent_audit_entries: int = 5,
    ):
        super().__init__(session)
        self.tz = tz
        self.recent_audit_entries = recent_audit_entries

    # -- helpers ------------------------------------------------------------

    def _past_due_exists(self, now: datetime) -> ColumnElement[bool]:
        today = business_date(now, self.tz)
        return (
            select(BorrowingItem.id)
            .where(
                BorrowingItem.batch_id == BorrowingBatch.id,
                BorrowingItem.status == BorrowingStatus.BORROWED,
                BorrowingItem.expected_return < today,
            )
            .exists()
        )

    def _display_filter(self, status: DisplayStatus, now: datetime) -> ColumnElement[bool]:
        stored = status.to_stored()
        condition = BorrowingBatch.status == stored
        if status is DisplayStatus.OVERDUE:
            return condition & self._past_due_exists(now)
        if status is DisplayStatus.BORROWED:
            return condition & ~self._past_due_exists(now)
        return condition

    def recent_audit(self, batch_id: UUID) -> list[WorkflowAuditEntry]:
        """Newest audit entries of *batch_id*, returned oldest first."""
        if self.recent_audit_entries <= 0:
            return []
        entries = self.session.execute(
            select(WorkflowAuditEntry)
            .where(WorkflowAuditEntry.batch_id == batch_id)
            .order_by(WorkflowAuditEntry.seq.desc())
            .limit(self.recent_audit_entries)
        ).scalars().all()
        return list(reversed(entries))

    def _snapshot(self, batch: BorrowingBatch, now: datetime) -> BatchSnapshot:
        return batch_to_snapshot(batch, now, self.tz, self.recent_audit(batch.id))

    # -- single batch -------------------------------------------------------

    def get_snapshot(self, batch_id: UUID, now: datetime) -> BatchSnapshot | None:
        batch = self.session.get(BorrowingBatch, batch_id)
        if batch is None:
            return None
        return self._snapshot(batch, now)

    def get_by_reference(self, batch_reference: str, now: datetime) -> BatchSnapshot | None:
        batch = self.session.execute(
            select(BorrowingBatch)
            .where(BorrowingBatch.batch_reference == batch_reference)
        ).scalar_one_or_none()
        if batch is None:
            return None
        return self._snapshot(batch, now)

    def timeline(self, batch_id: UUID) -> tuple[AuditEntrySnapshot, ...]:
        """Complete workflow history of *batch_id*, oldest first."""
        entries = self.session.execute(
            select(WorkflowAuditEntry)
            .where(WorkflowAuditEntry.batch_id == batch_id)
            .order_by(WorkflowAuditEntry.seq)
        ).scalars().all()
        return tuple(audit_to_snapshot(e) for e in entries)

    # -- lists --------------------------------------------------------------

    def list_batches(
        self,
        now: datetime,
        status: DisplayStatus | None = None,
        borrower: str | None = None,
        project: str | None = None,
        asset_id: UUID | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[BatchSnapshot]:
        """
        Batches matching every given filter, newest first.

        ``borrower`` is a case-insensitive substring match on the borrower
        name; ``status`` accepts any display status including Overdue.
        """
        stmt = select(BorrowingBatch)
        if status is not None:
            stmt = stmt.where(self._display_filter(DisplayStatus(status), now))
        if borrower:
            stmt = stmt.where(BorrowingBatch.borrower_name.ilike(f"%{borrower}%"))
        if project:
            stmt = stmt.where(BorrowingBatch.borrower_project == project)
        if asset_id is not None:
            stmt = stmt.where(
                select(BorrowingItem.id)
                .where(
                    BorrowingItem.batch_id == BorrowingBatch.id,
                    BorrowingItem.asset_id == asset_id,
                )
                .exists()
            )
        stmt = (
            stmt.order_by(BorrowingBatch.created_at.desc(), BorrowingBatch.batch_reference.desc())
            .limit(limit)
            .offset(offset)
        )
        batches = self.session.execute(stmt).scalars().all()
        return [self._snapshot(batch, now) for batch in batches]

    def count_overdue(self, now: datetime) -> int:
        """Number of batches currently shown as Overdue."""
        return self.session.execute(
            select(func.count(BorrowingBatch.id))
            .where(self._display_filter(DisplayStatus.OVERDUE, now))
        ).scalar_one()

    def status_counts(self, now: datetime) -> dict[DisplayStatus, int]:
        """Batch count per display status (every status present, zeros included)."""
        counts = {status: 0 for status in DisplayStatus}
        rows = self.session.execute(
            select(BorrowingBatch.status, func.count(BorrowingBatch.id))
            .group_by(BorrowingBatch.status)
        ).all()
        for stored, count in rows:
            counts[DisplayStatus.from_stored(BorrowingStatus(stored))] = count

        overdue = self.count_overdue(now)
        counts[DisplayStatus.BORROWED] -= overdue
        counts[DisplayStatus.OVERDUE] = overdue
        return counts

    def actionable_batches(
        self,
        role: ActorRole,
        matrix: RoleAuthorizationMatrix,
        now: datetime,
        limit: int = 50,
    ) -> list[BatchSnapshot]:
        """
        Batches waiting for a step *role* is allowed to perform, oldest first.

        Only forward steps (verify, approve, release, return) count; cancel
        and extend are available on many batches but are never "waiting".
        """
        statuses = sorted({
            state
            for action in QUEUE_ACTIONS
            for state in BORROWING_WORKFLOW.allowed_from(action)
            if matrix.is_authorized(action, role, state)
        }, key=lambda s: s.value)
        if not statuses:
            return []

        batches = self.session.execute(
            select(BorrowingBatch)
            .where(BorrowingBatch.status.in_(statuses))
            .order_by(BorrowingBatch.created_at, BorrowingBatch.batch_reference)
            .limit(limit)
        ).scalars().all()
        return [self._snapshot(batch, now) for batch in batches]
