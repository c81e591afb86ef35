"""
BorrowingWorkflowEngine -- validate and apply borrowing workflow transitions.

Responsibility:
    The single write path for workflow actions on an existing batch.  One
    call validates the requested action against the batch's current
    status, the actor's role and the transition guards, then moves the
    batch AND every one of its items to the new status, stamps the stage
    actor/time/notes, and appends one audit entry -- all in one
    transaction.

Architecture position:
    Kernel > Services -- imperative shell.  Owns its unit of work: each
    call opens a session from the injected factory, holds the batch lock,
    and commits or rolls back before returning.

Order of checks (each failure raises and changes nothing):
    1. Idempotency replay   -- same key, same batch and action: return the
                               current snapshot without applying anything.
                               UnauthorizedError unless the caller recorded
                               the key or may perform the action.
    2. Batch exists         -- BatchNotFoundError.
    3. Batch consistency    -- ConsistencyError (items disagree, empty batch).
    4. Pre-state            -- InvalidStateError (carries the display status
                               and the valid pre-states).
    5. Role                 -- UnauthorizedError.  Checked AFTER the state so
                               the caller learns the real blocking reason.
    6. Guards               -- GuardFailedError (guard name + field).

Invariants enforced:
    - Items of a batch never hold different statuses after a transition.
    - Every applied transition writes exactly one audit entry; a replay
      writes none.
    - Terminal batches accept no transition (no entry in the table).

Failure modes:
    - Every rejection raises a WorkflowError subclass; nothing is swallowed.
    - OptimisticLockError if a concurrent writer slipped past the locks.
"""

import time
from collections.abc import Callable
from datetime import date, datetime, timezone, tzinfo
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from borrowing_kernel.domain.aggregate import aggregate_status, resolve_stored_status
from borrowing_kernel.domain.authorization import RoleAuthorizationMatrix
from borrowing_kernel.domain.clock import Clock, SystemClock
from borrowing_kernel.domain.dtos import (
    AuditEntrySnapshot,
    BatchSnapshot,
    TransitionPayload,
)
from borrowing_kernel.domain.guards import (
    GuardContext,
    GuardExecutor,
    GuardItem,
    default_guard_executor,
)
from borrowing_kernel.domain.roles import Actor
from borrowing_kernel.domain.workflow import (
    BORROWING_WORKFLOW,
    BorrowingStatus,
    ReturnCondition,
    Transition,
    Workflow,
    WorkflowAction,
)
from borrowing_kernel.exceptions import (
    BatchNotFoundError,
    BorrowingKernelError,
    ConsistencyError,
    IdempotencyKeyConflictError,
    InvalidStateError,
    OptimisticLockError,
    UnauthorizedError,
    UnsupportedActionError,
)
from borrowing_kernel.logging_config import LogContext, get_logger
from borrowing_kernel.models.batch import BorrowingBatch, BorrowingItem
from borrowing_kernel.selectors.batch_selector import (
    BatchSelector,
    audit_to_snapshot,
    batch_to_snapshot,
)
from borrowing_kernel.services.audit_trail import WorkflowAuditTrail
from borrowing_kernel.services.locking import BatchLockRegistry

logger = get_logger("services.workflow_engine")

TRACE_TYPE_WORKFLOW_TRANSITION = "workflow_transition"
OUTCOME_APPLIED = "APPLIED"
OUTCOME_REPLAYED = "REPLAYED"

AuditListener = Callable[[AuditEntrySnapshot, BatchSnapshot], None]

# Batch columns written by each stage: (actor, timestamp, notes)
_STAGE_COLUMNS: dict[str, tuple[str, str, str]] = {
    "verified": ("verified_by_id", "verified_at", "verification_notes"),
    "approved": ("approved_by_id", "approved_at", "approval_notes"),
    "released": ("released_by_id", "released_at", "release_notes"),
    "returned": ("returned_by_id", "returned_at", "return_notes"),
    "canceled": ("canceled_by_id", "canceled_at", "cancellation_reason"),
}


def _emit_workflow_trace(
    action: str,
    batch_id: UUID,
    from_status: str | None,
    outcome: str,
    reason: str,
    duration_ms: float,
    to_status: str | None = None,
) -> None:
    """Emit one structured record per engine call, successful or not."""
    record: dict[str, Any] = {
        "trace_type": TRACE_TYPE_WORKFLOW_TRANSITION,
        "workflow": BORROWING_WORKFLOW.name,
        "workflow_action": action,
        "entity_type": "BorrowingBatch",
        "entity_id": str(batch_id),
        "from_status": from_status,
        "outcome": outcome,
        "reason": reason,
        "duration_ms": round(duration_ms, 3),
    }
    if to_status is not None:
        record["to_status"] = to_status
    logger.info("workflow_transition", extra=record)


class BorrowingWorkflowEngine:
    """
    Applies workflow actions to borrowing batches.

    Contract:
        ``apply_transition`` either returns the refreshed snapshot of a batch
        whose items and header moved together and whose audit trail grew by
        exactly one entry, or raises a WorkflowError and changes nothing.

    Guarantees:
        - Same-batch calls are serialized (in-process lock + row lock).
        - Different batches never wait on each other's locks.
        - Post-commit listeners see only committed transitions.

    Non-goals:
        - Does not create batches (see BorrowingBatchService).
        - Does not send notifications; register a listener instead.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        matrix: RoleAuthorizationMatrix | None = None,
        clock: Clock | None = None,
        tz: tzinfo = timezone.utc,
        guard_executor: GuardExecutor | None = None,
        lock_registry: BatchLockRegistry | None = None,
        maker_may_cancel_unverified: bool = True,
        recent_audit_entries: int = 5,
        workflow: Workflow = BORROWING_WORKFLOW,
    ):
        self._session_factory = session_factory
        self.matrix = matrix or RoleAuthorizationMatrix.default()
        self.clock = clock or SystemClock()
        self.tz = tz
        self._guards = guard_executor or default_guard_executor()
        self._locks = lock_registry or BatchLockRegistry()
        self._maker_may_cancel_unverified = maker_may_cancel_unverified
        self._recent_audit_entries = recent_audit_entries
        self._workflow = workflow
        self._listeners: list[AuditListener] = []

        self._handlers: dict[
            WorkflowAction,
            Callable[[BorrowingBatch, TransitionPayload, datetime], dict[str, Any]],
        ] = {
            WorkflowAction.VERIFY: self._apply_stage_only,
            WorkflowAction.APPROVE: self._apply_stage_only,
            WorkflowAction.RELEASE: self._apply_release,
            WorkflowAction.RETURN: self._apply_return,
            WorkflowAction.CANCEL: self._apply_stage_only,
            WorkflowAction.EXTEND: self._apply_extend,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def handled_actions(self) -> frozenset[WorkflowAction]:
        return frozenset(self._handlers)

    @property
    def lock_registry(self) -> BatchLockRegistry:
        return self._locks

    def add_listener(self, listener: AuditListener) -> None:
        """Call *listener* with (audit entry, snapshot) after each committed transition."""
        self._listeners.append(listener)

    def apply_transition(
        self,
        batch_id: UUID | str,
        action: WorkflowAction | str,
        actor: Actor,
        payload: TransitionPayload | None = None,
    ) -> BatchSnapshot:
        """
        Validate and apply *action* to the batch.

        Raises:
            UnsupportedActionError: *action* is not a workflow transition.
            BatchNotFoundError: no batch with *batch_id*.
            ConsistencyError: stored batch data violates the invariants.
            InvalidStateError: current status does not accept *action*.
            UnauthorizedError: the actor's role may not perform *action*.
            GuardFailedError: required data missing or invalid.
            IdempotencyKeyConflictError: key already used for another request.
            OptimisticLockError: concurrent modification detected.
        """
        start = time.monotonic()
        batch_uuid = batch_id if isinstance(batch_id, UUID) else UUID(str(batch_id))
        payload = payload or TransitionPayload()
        action_value = action.value if isinstance(action, WorkflowAction) else str(action)
        state: dict[str, str | None] = {"from": None, "to": None}

        with LogContext.bind(
            batch_id=str(batch_uuid),
            actor_id=str(actor.actor_id),
            action=action_value,
            idempotency_key=payload.idempotency_key,
        ):
            try:
                resolved_action = self._resolve_action(action)
                with self._locks.hold(batch_uuid):
                    snapshot, entry = self._apply_in_transaction(
                        batch_uuid, resolved_action, actor, payload, state,
                    )
            except BorrowingKernelError as exc:
                duration_ms = (time.monotonic() - start) * 1000
                if isinstance(exc, ConsistencyError):
                    logger.error("batch_consistency_violation", exc_info=exc)
                _emit_workflow_trace(
                    action=action_value,
                    batch_id=batch_uuid,
                    from_status=state["from"],
                    outcome=exc.code,
                    reason=str(exc),
                    duration_ms=duration_ms,
                )
                raise

            duration_ms = (time.monotonic() - start) * 1000
            _emit_workflow_trace(
                action=action_value,
                batch_id=batch_uuid,
                from_status=state["from"],
                outcome=OUTCOME_APPLIED if entry is not None else OUTCOME_REPLAYED,
                reason="" if entry is not None else "idempotency key already recorded",
                duration_ms=duration_ms,
                to_status=state["to"],
            )

            if entry is not None:
                self._notify(entry, snapshot)
            return snapshot

    def extend_return_date(
        self,
        batch_id: UUID | str,
        actor: Actor,
        new_expected_return: date,
        reason: str,
        item_ids: tuple[UUID, ...] = (),
        idempotency_key: str | None = None,
    ) -> BatchSnapshot:
        """Move the expected return of borrowed items (all items when none are named)."""
        return self.apply_transition(
            batch_id,
            WorkflowAction.EXTEND,
            actor,
            TransitionPayload(
                reason=reason,
                new_expected_return=new_expected_return,
                item_ids=tuple(item_ids),
                idempotency_key=idempotency_key,
            ),
        )

    def get_snapshot(self, batch_id: UUID | str) -> BatchSnapshot:
        """Current snapshot of a batch.

        Raises:
            BatchNotFoundError: no batch with *batch_id*.
        """
        batch_uuid = batch_id if isinstance(batch_id, UUID) else UUID(str(batch_id))
        session = self._session_factory()
        try:
            snapshot = self._selector(session).get_snapshot(batch_uuid, self.clock.now())
        finally:
            session.close()
        if snapshot is None:
            raise BatchNotFoundError(str(batch_uuid))
        return snapshot

    # ------------------------------------------------------------------
    # Transaction
    # ------------------------------------------------------------------

    def _resolve_action(self, action: WorkflowAction | str) -> WorkflowAction:
        try:
            resolved = WorkflowAction(action)
        except ValueError:
            raise UnsupportedActionError(str(action)) from None
        if resolved not in self._handlers:
            raise UnsupportedActionError(resolved.value)
        return resolved

    def _selector(self, session: Session) -> BatchSelector:
        return BatchSelector(session, self.tz, self._recent_audit_entries)

    def _apply_in_transaction(
        self,
        batch_id: UUID,
        action: WorkflowAction,
        actor: Actor,
        payload: TransitionPayload,
        state: dict[str, str | None],
    ) -> tuple[BatchSnapshot, AuditEntrySnapshot | None]:
        session = self._session_factory()
        try:
            with session.begin():
                replay = self._check_replay(session, batch_id, action, actor, payload)
                if replay is not None:
                    state["from"] = state["to"] = replay.status.value
                    return replay, None

                batch = self._load_for_update(session, batch_id)
                now = self.clock.now()
                stored = resolve_stored_status(batch.items, batch.id, batch.status)
                state["from"] = stored.value

                transition = self._require_transition(batch, stored, action, now)
                self._authorize(batch, stored, action, actor)
                self._guards.check(transition, self._guard_context(batch, action, payload, now))

                details = self._mutate(batch, transition, actor, payload, now)
                try:
                    session.flush()
                except StaleDataError as exc:
                    raise OptimisticLockError("BorrowingBatch", str(batch_id)) from exc

                entry = WorkflowAuditTrail(session).record(
                    batch_id=batch.id,
                    action=action,
                    actor=actor,
                    from_status=stored,
                    to_status=transition.to_state,
                    occurred_at=now,
                    notes=payload.note_text(action),
                    idempotency_key=payload.idempotency_key,
                    details=details,
                )
                state["to"] = transition.to_state.value
                snapshot = batch_to_snapshot(
                    batch, now, self.tz, self._selector(session).recent_audit(batch.id),
                )
                entry_snapshot = audit_to_snapshot(entry)
            return snapshot, entry_snapshot
        except IntegrityError:
            # A concurrent transaction may have recorded the same idempotency key first.
            if payload.idempotency_key is None:
                raise
            replay = self._replay_after_race(batch_id, action, actor, payload)
            if replay is None:
                raise
            return replay, None
        finally:
            session.close()

    def _check_replay(
        self,
        session: Session,
        batch_id: UUID,
        action: WorkflowAction,
        actor: Actor,
        payload: TransitionPayload,
    ) -> BatchSnapshot | None:
        key = payload.idempotency_key
        if key is None:
            return None
        recorded = WorkflowAuditTrail(session).find_by_idempotency_key(key)
        if recorded is None:
            return None
        if recorded.batch_id != batch_id or recorded.action is not action:
            raise IdempotencyKeyConflictError(
                key, str(recorded.batch_id), recorded.action.value,
            )
        # Only the recording actor or a role allowed the action may see the result.
        if recorded.actor_id != actor.actor_id and not self.matrix.is_authorized(
            action, actor.role, recorded.from_status,
        ):
            raise UnauthorizedError(action.value, actor.role_name, str(batch_id))
        logger.info("workflow_transition_replayed", extra={"audit_seq": recorded.seq})
        snapshot = self._selector(session).get_snapshot(batch_id, self.clock.now())
        if snapshot is None:
            raise BatchNotFoundError(str(batch_id))
        return snapshot

    def _replay_after_race(
        self,
        batch_id: UUID,
        action: WorkflowAction,
        actor: Actor,
        payload: TransitionPayload,
    ) -> BatchSnapshot | None:
        session = self._session_factory()
        try:
            return self._check_replay(session, batch_id, action, actor, payload)
        finally:
            session.close()

    def _load_for_update(self, session: Session, batch_id: UUID) -> BorrowingBatch:
        batch = session.execute(
            select(BorrowingBatch)
            .where(BorrowingBatch.id == batch_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if batch is None:
            raise BatchNotFoundError(str(batch_id))
        session.execute(
            select(BorrowingItem.id)
            .where(BorrowingItem.batch_id == batch_id)
            .with_for_update()
        )
        return batch

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _require_transition(
        self,
        batch: BorrowingBatch,
        stored: BorrowingStatus,
        action: WorkflowAction,
        now: datetime,
    ) -> Transition:
        transition = self._workflow.find_transition(stored, action)
        if transition is not None:
            return transition

        display = aggregate_status(batch.items, now, self.tz, batch.id, batch.status)
        allowed: list[str] = []
        for status in self._workflow.allowed_from(action):
            allowed.append(status.value)
            if status is BorrowingStatus.BORROWED:
                allowed.append("Overdue")
        raise InvalidStateError(str(batch.id), action.value, display.value, tuple(allowed))

    def _authorize(
        self,
        batch: BorrowingBatch,
        stored: BorrowingStatus,
        action: WorkflowAction,
        actor: Actor,
    ) -> None:
        if self.matrix.is_authorized(action, actor.role, stored):
            return
        if (
            action is WorkflowAction.CANCEL
            and stored is BorrowingStatus.PENDING_VERIFICATION
            and self._maker_may_cancel_unverified
            and batch.created_by_id == actor.actor_id
        ):
            logger.info("maker_cancel_permitted")
            return
        raise UnauthorizedError(action.value, actor.role_name, str(batch.id))

    def _guard_context(
        self,
        batch: BorrowingBatch,
        action: WorkflowAction,
        payload: TransitionPayload,
        now: datetime,
    ) -> GuardContext:
        return GuardContext(
            batch_id=batch.id,
            action=action,
            items=tuple(GuardItem(item.id, item.expected_return) for item in batch.items),
            payload=payload,
            now=now,
            tz=self.tz,
        )

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _mutate(
        self,
        batch: BorrowingBatch,
        transition: Transition,
        actor: Actor,
        payload: TransitionPayload,
        now: datetime,
    ) -> dict[str, Any]:
        details = self._handlers[transition.action](batch, payload, now)

        if transition.stage is not None:
            by_col, at_col, notes_col = _STAGE_COLUMNS[transition.stage]
            setattr(batch, by_col, actor.actor_id)
            setattr(batch, at_col, now)
            setattr(batch, notes_col, payload.note_text(transition.action))

        if transition.changes_status:
            batch.status = transition.to_state
            for item in batch.items:
                item.status = transition.to_state

        batch.updated_by_id = actor.actor_id
        return details

    def _apply_stage_only(
        self, batch: BorrowingBatch, payload: TransitionPayload, now: datetime,
    ) -> dict[str, Any]:
        return {}

    def _apply_release(
        self, batch: BorrowingBatch, payload: TransitionPayload, now: datetime,
    ) -> dict[str, Any]:
        released: dict[str, Any] = {}
        for item in batch.items:
            supplied = payload.items.get(item.id)
            if supplied is not None:
                if supplied.serial_number:
                    item.serial_number = supplied.serial_number
                if supplied.expected_return is not None:
                    item.expected_return = supplied.expected_return
                if supplied.notes:
                    item.notes = supplied.notes
            released[str(item.id)] = {
                "serial_number": item.serial_number,
                "expected_return": item.expected_return,
            }
        return {"items": released}

    def _apply_return(
        self, batch: BorrowingBatch, payload: TransitionPayload, now: datetime,
    ) -> dict[str, Any]:
        actual_return = payload.actual_return or now
        conditions: dict[str, str] = {}
        incident_candidates: list[str] = []
        for item in batch.items:
            supplied = payload.items.get(item.id)
            condition = (
                supplied.condition
                if supplied is not None and supplied.condition is not None
                else ReturnCondition.GOOD
            )
            item.actual_return = actual_return
            item.condition = condition
            if supplied is not None and supplied.notes:
                item.notes = supplied.notes
            conditions[str(item.id)] = condition.value
            if condition.is_incident_candidate:
                incident_candidates.append(str(item.id))

        if incident_candidates:
            logger.warning(
                "return_incident_candidates",
                extra={"item_ids": incident_candidates},
            )
        return {
            "actual_return": actual_return,
            "conditions": conditions,
            "incident_candidates": incident_candidates,
        }

    def _apply_extend(
        self, batch: BorrowingBatch, payload: TransitionPayload, now: datetime,
    ) -> dict[str, Any]:
        selected = set(payload.item_ids)
        previous: dict[str, Any] = {}
        for item in batch.items:
            if selected and item.id not in selected:
                continue
            previous[str(item.id)] = item.expected_return
            item.expected_return = payload.new_expected_return
        return {
            "new_expected_return": payload.new_expected_return,
            "previous_expected_return": previous,
        }

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def _notify(self, entry: AuditEntrySnapshot, snapshot: BatchSnapshot) -> None:
        for listener in self._listeners:
            try:
                listener(entry, snapshot)
            except Exception:
                # The transition is committed; a consumer failure must not undo it.
                logger.exception(
                    "audit_listener_failed",
                    extra={"listener": getattr(listener, "__name__", repr(listener))},
                )
