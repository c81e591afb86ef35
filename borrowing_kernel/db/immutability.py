"""
ORM-level immutability enforcement.

Two persistence rules are enforced here as SQLAlchemy mapper event
listeners, so they hold no matter which service (or which stray script)
touches the rows:

  1. Workflow audit entries are append-only.  Any UPDATE or DELETE of a
     WorkflowAuditEntry raises ImmutabilityViolationError.

  2. A batch that reached a terminal status (Returned, Canceled) is frozen.
     Any further change to the batch header or to one of its items raises
     ImmutabilityViolationError.  The check looks at the value the row was
     LOADED with, so the transition INTO a terminal status is allowed.

Usage:
    from borrowing_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

    # Tests:
    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect

from borrowing_kernel.domain.workflow import BorrowingStatus
from borrowing_kernel.exceptions import ImmutabilityViolationError
from borrowing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _blocked(entity_type: str, entity_id: str, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
    )


def _loaded_status(target) -> BorrowingStatus | None:
    """Status the row had before this unit of work changed it."""
    history = inspect(target).attrs.status.history
    if history.deleted:
        return BorrowingStatus(history.deleted[0])
    if history.unchanged:
        return BorrowingStatus(history.unchanged[0])
    return None


# =============================================================================
# Audit entries
# =============================================================================


def _check_audit_entry_update(mapper, connection, target):
    """Prevent any updates to WorkflowAuditEntry records."""
    _blocked(
        "WorkflowAuditEntry",
        str(target.id),
        "UPDATE",
        "Workflow audit entries are immutable and cannot be modified",
    )


def _check_audit_entry_delete(mapper, connection, target):
    """Prevent deletion of WorkflowAuditEntry records."""
    _blocked(
        "WorkflowAuditEntry",
        str(target.id),
        "DELETE",
        "Workflow audit entries cannot be deleted",
    )


# =============================================================================
# Terminal batches
# =============================================================================


def _check_batch_update(mapper, connection, target):
    loaded = _loaded_status(target)
    if loaded is not None and loaded.is_terminal:
        _blocked(
            "BorrowingBatch",
            str(target.id),
            "UPDATE",
            f"Batch is {loaded.value} and can no longer change",
        )


def _check_item_update(mapper, connection, target):
    loaded = _loaded_status(target)
    if loaded is not None and loaded.is_terminal:
        _blocked(
            "BorrowingItem",
            str(target.id),
            "UPDATE",
            f"Item is {loaded.value} and can no longer change",
        )


def _listeners():
    from borrowing_kernel.models.audit_entry import WorkflowAuditEntry
    from borrowing_kernel.models.batch import BorrowingBatch, BorrowingItem

    return (
        (WorkflowAuditEntry, "before_update", _check_audit_entry_update),
        (WorkflowAuditEntry, "before_delete", _check_audit_entry_delete),
        (BorrowingBatch, "before_update", _check_batch_update),
        (BorrowingItem, "before_update", _check_item_update),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Safe to call more than once; a listener already registered is skipped.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)

    logger.info("immutability_listeners_registered")


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if it was never registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """Remove all immutability listeners (used by tests that need raw edits)."""
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
