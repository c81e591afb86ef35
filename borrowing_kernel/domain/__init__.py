"""
Pure domain layer.

This module contains the borrowing state machine, the role matrix, the
overdue and aggregate-status rules, guards, and the immutable DTOs passed
across the service boundary.  Nothing here touches:
- ORM (SQLAlchemy)
- Database
- Wall-clock time (``now`` is always passed in)

All domain objects are immutable and deterministic.
"""

from borrowing_kernel.domain.aggregate import aggregate_status, resolve_stored_status
from borrowing_kernel.domain.authorization import DEFAULT_PERMISSIONS, RoleAuthorizationMatrix
from borrowing_kernel.domain.clock import Clock, DeterministicClock, SequentialClock, SystemClock
from borrowing_kernel.domain.dtos import (
    AuditEntrySnapshot,
    BatchSnapshot,
    ItemPayload,
    ItemSnapshot,
    NewBatchRequest,
    NewItemSpec,
    StageStamp,
    TransitionPayload,
)
from borrowing_kernel.domain.guards import GuardContext, GuardExecutor, default_guard_executor
from borrowing_kernel.domain.overdue import (
    business_date,
    days_overdue,
    effective_status,
    is_past_due,
)
from borrowing_kernel.domain.roles import Actor, ActorRole
from borrowing_kernel.domain.workflow import (
    BORROWING_TRANSITIONS,
    BORROWING_WORKFLOW,
    TERMINAL_STATUSES,
    BorrowingStatus,
    DisplayStatus,
    Guard,
    ReturnCondition,
    Transition,
    Workflow,
    WorkflowAction,
)

__all__ = [
    # Workflow
    "BorrowingStatus",
    "DisplayStatus",
    "WorkflowAction",
    "ReturnCondition",
    "TERMINAL_STATUSES",
    "Guard",
    "Transition",
    "Workflow",
    "BORROWING_TRANSITIONS",
    "BORROWING_WORKFLOW",
    # Roles and authorization
    "Actor",
    "ActorRole",
    "DEFAULT_PERMISSIONS",
    "RoleAuthorizationMatrix",
    # Status derivation
    "business_date",
    "days_overdue",
    "effective_status",
    "is_past_due",
    "aggregate_status",
    "resolve_stored_status",
    # Guards
    "GuardContext",
    "GuardExecutor",
    "default_guard_executor",
    # Clock
    "Clock",
    "DeterministicClock",
    "SequentialClock",
    "SystemClock",
    # DTOs
    "AuditEntrySnapshot",
    "BatchSnapshot",
    "ItemPayload",
    "ItemSnapshot",
    "NewBatchRequest",
    "NewItemSpec",
    "StageStamp",
    "TransitionPayload",
]
