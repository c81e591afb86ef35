"""ORM models for the borrowing kernel."""

from borrowing_kernel.models.audit_entry import WorkflowAuditEntry
from borrowing_kernel.models.batch import BorrowingBatch, BorrowingItem
from borrowing_kernel.models.sequence import SequenceCounter

__all__ = [
    "BorrowingBatch",
    "BorrowingItem",
    "SequenceCounter",
    "WorkflowAuditEntry",
]
