"""
Typed Exception Hierarchy for the Borrowing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A rejected workflow call must tell the caller *why* it was rejected without
the caller parsing a message string.  Every error therefore has:

  1. A TYPED exception class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA stored as attributes (current status, role, guard name)

Example:
    try:
        engine.apply_transition(batch_id, WorkflowAction.APPROVE, actor)
    except InvalidStateError as e:
        show(f"Batch is {e.current_status}, approve needs {e.allowed_statuses}")
    except UnauthorizedError as e:
        show(f"{e.role} may not {e.action}")

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BorrowingKernelError (base)
    |
    +-- WorkflowError
    |   +-- NotFoundError
    |   |   +-- BatchNotFoundError
    |   |   +-- BatchItemNotFoundError
    |   +-- InvalidStateError
    |   +-- UnauthorizedError
    |   +-- GuardFailedError
    |   +-- ConsistencyError
    |   +-- UnsupportedActionError
    |   +-- IdempotencyKeyConflictError
    |
    +-- BatchValidationError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Workflow        | BATCH_NOT_FOUND             | Batch ID doesn't exist
                | BATCH_ITEM_NOT_FOUND        | Item ID not part of the batch
                | INVALID_STATE               | Action not valid from current status
                | UNAUTHORIZED                | Role may not perform the action
                | GUARD_FAILED                | Required data missing or invalid
                | CONSISTENCY_ERROR           | Items disagree on status (data bug)
                | UNSUPPORTED_ACTION          | Action has no workflow transition
                | IDEMPOTENCY_KEY_CONFLICT    | Key reused for a different request
----------------|-----------------------------|-----------------------------------------
Submission      | BATCH_VALIDATION_FAILED     | New batch request is incomplete
----------------|-----------------------------|-----------------------------------------
Audit           | AUDIT_CHAIN_BROKEN          | Hash chain validation failed
----------------|-----------------------------|-----------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT    | Concurrent modification detected
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Modifying an audit entry

===============================================================================
DESIGN DECISIONS
===============================================================================

1. InvalidStateError is raised BEFORE UnauthorizedError is considered, so
   a caller holding the right role on a batch in the wrong state learns the
   real blocking reason.

2. ConsistencyError means stored data violates a batch invariant.  It is
   never a user error; callers should surface it and alert.

===============================================================================
"""


class BorrowingKernelError(Exception):
    """
    Base exception for all borrowing kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BORROWING_KERNEL_ERROR"


# Workflow-related exceptions


class WorkflowError(BorrowingKernelError):
    """Base exception for rejected workflow transitions."""

    code: str = "WORKFLOW_ERROR"


class NotFoundError(WorkflowError):
    """Base exception for missing workflow entities."""

    code: str = "NOT_FOUND"


class BatchNotFoundError(NotFoundError):
    """Borrowing batch with given ID was not found."""

    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Borrowing batch not found: {batch_id}")


class BatchItemNotFoundError(NotFoundError):
    """Item ID does not belong to the batch."""

    code: str = "BATCH_ITEM_NOT_FOUND"

    def __init__(self, batch_id: str, item_id: str):
        self.batch_id = batch_id
        self.item_id = item_id
        super().__init__(f"Item {item_id} is not part of batch {batch_id}")


class InvalidStateError(WorkflowError):
    """The batch's current status is not a valid pre-state for the action."""

    code: str = "INVALID_STATE"

    def __init__(
        self,
        batch_id: str,
        action: str,
        current_status: str,
        allowed_statuses: tuple[str, ...],
    ):
        self.batch_id = batch_id
        self.action = action
        self.current_status = current_status
        self.allowed_statuses = allowed_statuses
        allowed = ", ".join(allowed_statuses) or "none"
        super().__init__(
            f"Cannot {action} batch {batch_id} in status {current_status!r} "
            f"(allowed: {allowed})"
        )


class UnauthorizedError(WorkflowError):
    """The actor's role is not permitted to perform the action."""

    code: str = "UNAUTHORIZED"

    def __init__(self, action: str, role: str, batch_id: str | None = None):
        self.action = action
        self.role = role
        self.batch_id = batch_id
        super().__init__(f"Role {role!r} is not authorized to {action}")


class GuardFailedError(WorkflowError):
    """A transition precondition beyond role and state was not met."""

    code: str = "GUARD_FAILED"

    def __init__(self, guard: str, field: str, detail: str):
        self.guard = guard
        self.field = field
        self.detail = detail
        super().__init__(f"Guard {guard} failed on {field}: {detail}")


class ConsistencyError(WorkflowError):
    """Stored batch data violates the batch/item status invariants."""

    code: str = "CONSISTENCY_ERROR"

    def __init__(self, batch_id: str, statuses: tuple[str, ...], detail: str):
        self.batch_id = batch_id
        self.statuses = statuses
        self.detail = detail
        super().__init__(f"Batch {batch_id} is inconsistent: {detail}")


class UnsupportedActionError(WorkflowError):
    """The action has no transition in the borrowing workflow."""

    code: str = "UNSUPPORTED_ACTION"

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Action {action!r} is not a workflow transition")


class IdempotencyKeyConflictError(WorkflowError):
    """Idempotency key was already used for a different batch or action."""

    code: str = "IDEMPOTENCY_KEY_CONFLICT"

    def __init__(
        self,
        idempotency_key: str,
        recorded_batch_id: str,
        recorded_action: str,
    ):
        self.idempotency_key = idempotency_key
        self.recorded_batch_id = recorded_batch_id
        self.recorded_action = recorded_action
        super().__init__(
            f"Idempotency key {idempotency_key!r} already used for "
            f"{recorded_action} on batch {recorded_batch_id}"
        )


# Submission-related exceptions


class BatchValidationError(BorrowingKernelError):
    """A new borrowing request failed validation."""

    code: str = "BATCH_VALIDATION_FAILED"

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Borrowing request is invalid: " + "; ".join(errors))


# Audit-related exceptions


class AuditError(BorrowingKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_entry_id: str, expected_hash: str, actual_hash: str):
        self.audit_entry_id = audit_entry_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_entry_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


# Concurrency-related exceptions


class ConcurrencyError(BorrowingKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Immutability-related exceptions


class ImmutabilityError(BorrowingKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Workflow audit entries are append-only after creation.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
