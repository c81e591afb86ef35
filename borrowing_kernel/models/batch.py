"""
Module: borrowing_kernel.models.batch
Responsibility: ORM persistence for borrowing batches and their items.
Architecture position: Kernel > Models.  May import from db/base.py and the
    domain enums only.
Invariants enforced:
    - A batch's items share its workflow status (enforced by the engine;
      verified on every load by the aggregate resolver).
    - actual_return is set iff an item is Returned (CHECK constraint).
    - expected_return is set for any Borrowed or Returned item (CHECK
      constraint).
    - quantity is at least 1 (CHECK constraint).
    - ``version`` is the optimistic-lock counter; a stale write raises
      StaleDataError, translated to OptimisticLockError by the engine.
Failure modes:
    - IntegrityError when a write would break one of the CHECK constraints.
"""

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from borrowing_kernel.db.base import Base, TrackedBase, UUIDString
from borrowing_kernel.domain.workflow import BorrowingStatus, ReturnCondition


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def status_column_type(name: str) -> SAEnum:
    """Stored-status column: the enum *values* as VARCHAR plus a CHECK constraint."""
    return SAEnum(
        BorrowingStatus,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=30,
        values_callable=_enum_values,
        validate_strings=True,
    )


class BorrowingBatch(TrackedBase):
    """
    A borrowing request covering one or more equipment items.

    Contract:
        ``status`` caches the shared status of the items.  Stage columns
        (verified_*, approved_*, released_*, returned_*, canceled_*) are
        NULL until the stage happens and are written once.
    """

    __tablename__ = "borrowing_batches"

    __table_args__ = (
        UniqueConstraint("batch_reference", name="uq_borrowing_batch_reference"),
        Index("idx_borrowing_batch_status", "status"),
        Index("idx_borrowing_batch_project", "borrower_project"),
    )

    batch_reference: Mapped[str] = mapped_column(String(50), nullable=False)

    borrower_name: Mapped[str] = mapped_column(String(100), nullable=False)
    borrower_contact: Mapped[str | None] = mapped_column(String(100), nullable=True)
    borrower_project: Mapped[str | None] = mapped_column(String(50), nullable=True)
    purpose: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[BorrowingStatus] = mapped_column(
        status_column_type("ck_borrowing_batch_status"),
        default=BorrowingStatus.PENDING_VERIFICATION,
        nullable=False,
    )

    # Verifier
    verified_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(nullable=True)
    verification_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Approver
    approved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Warehouse release
    released_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    release_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Return
    returned_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    returned_at: Mapped[datetime | None] = mapped_column(nullable=True)
    return_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Cancellation
    canceled_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    items: Mapped[list["BorrowingItem"]] = relationship(
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="BorrowingItem.position",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<BorrowingBatch {self.batch_reference} status={self.status.value}>"

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class BorrowingItem(Base):
    """One equipment line of a borrowing batch."""

    __tablename__ = "borrowing_items"

    __table_args__ = (
        UniqueConstraint("batch_id", "position", name="uq_borrowing_item_position"),
        Index("idx_borrowing_item_batch", "batch_id"),
        Index("idx_borrowing_item_asset", "asset_id"),
        Index("idx_borrowing_item_due", "status", "expected_return"),
        CheckConstraint("quantity >= 1", name="ck_borrowing_item_quantity"),
        CheckConstraint(
            "(status = 'Returned' AND actual_return IS NOT NULL) "
            "OR (status <> 'Returned' AND actual_return IS NULL)",
            name="ck_borrowing_item_actual_return",
        ),
        CheckConstraint(
            "status NOT IN ('Borrowed', 'Returned') OR expected_return IS NOT NULL",
            name="ck_borrowing_item_expected_return",
        ),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("borrowing_batches.id", ondelete="CASCADE"),
        nullable=False,
    )

    position: Mapped[int] = mapped_column(Integer, nullable=False)

    # Equipment asset being borrowed
    asset_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    serial_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[BorrowingStatus] = mapped_column(
        status_column_type("ck_borrowing_item_status"),
        default=BorrowingStatus.PENDING_VERIFICATION,
        nullable=False,
    )

    expected_return: Mapped[date | None] = mapped_column(nullable=True)
    actual_return: Mapped[datetime | None] = mapped_column(nullable=True)

    condition: Mapped[ReturnCondition | None] = mapped_column(
        SAEnum(
            ReturnCondition,
            name="ck_borrowing_item_condition",
            native_enum=False,
            create_constraint=True,
            length=20,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=True,
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    batch: Mapped[BorrowingBatch] = relationship(back_populates="items")

    def __repr__(self) -> str:
        return f"<BorrowingItem {self.id} asset={self.asset_id} status={self.status.value}>"
