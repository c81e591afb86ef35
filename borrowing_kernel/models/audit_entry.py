"""
Module: borrowing_kernel.models.audit_entry
Responsibility: ORM persistence for the per-batch workflow audit trail.
Architecture position: Kernel > Models.  May import from db/base.py and the
    domain enums only.
Invariants enforced:
    - Audit entries are append-only; no UPDATE or DELETE (ORM listeners in
      db/immutability.py).
    - Hash chain per batch: hash = H(entity_type | batch_id | action |
      payload_hash | prev_hash).  Validated by WorkflowAuditTrail.
    - (batch_id, seq) is unique; seq is allocated by SequenceService.
    - idempotency_key is unique when present.
Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - IntegrityError when an idempotency key is reused concurrently.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    Enum as SAEnum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from borrowing_kernel.db.base import Base, UUIDString
from borrowing_kernel.domain.workflow import BorrowingStatus, WorkflowAction
from borrowing_kernel.models.batch import _enum_values, status_column_type


class WorkflowAuditEntry(Base):
    """
    One recorded workflow action on a borrowing batch.

    Contract:
        Rows are append-only.  Each row's hash includes the previous row's
        hash for the same batch, creating a tamper-evident chain.

    Non-goals:
        - This model does NOT compute or check hashes; that is the
          responsibility of WorkflowAuditTrail.
    """

    __tablename__ = "borrowing_audit_entries"

    __table_args__ = (
        UniqueConstraint("batch_id", "seq", name="uq_borrowing_audit_batch_seq"),
        UniqueConstraint("idempotency_key", name="uq_borrowing_audit_idempotency"),
        Index("idx_borrowing_audit_batch", "batch_id"),
        Index("idx_borrowing_audit_occurred", "occurred_at"),
        Index("idx_borrowing_audit_actor", "actor_id"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("borrowing_batches.id"),
        nullable=False,
    )

    # Position in the batch's chain, starting at 1
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    action: Mapped[WorkflowAction] = mapped_column(
        SAEnum(
            WorkflowAction,
            name="ck_borrowing_audit_action",
            native_enum=False,
            create_constraint=True,
            length=20,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=False,
    )

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(50), nullable=False)

    # NULL for the creation entry
    from_status: Mapped[BorrowingStatus | None] = mapped_column(
        status_column_type("ck_borrowing_audit_from_status"),
        nullable=True,
    )
    to_status: Mapped[BorrowingStatus] = mapped_column(
        status_column_type("ck_borrowing_audit_to_status"),
        nullable=False,
    )

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True)

    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<WorkflowAuditEntry batch={self.batch_id} seq={self.seq} action={self.action.value}>"
