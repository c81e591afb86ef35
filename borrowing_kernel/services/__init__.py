"""Services for the borrowing kernel (write side)."""

from borrowing_kernel.services.audit_trail import WorkflowAuditTrail
from borrowing_kernel.services.batch_service import BorrowingBatchService
from borrowing_kernel.services.locking import BatchLockRegistry
from borrowing_kernel.services.sequence_service import SequenceService
from borrowing_kernel.services.workflow_engine import BorrowingWorkflowEngine

__all__ = [
    "BatchLockRegistry",
    "BorrowingBatchService",
    "BorrowingWorkflowEngine",
    "SequenceService",
    "WorkflowAuditTrail",
]
