"""
BorrowingBatchService -- submission of new borrowing batches (the Maker step).

Responsibility:
    Validates a new borrowing request, allocates its human-readable batch
    reference, persists the batch header and its items in the initial
    status, and writes the creation audit entry -- in one transaction.

Architecture position:
    Kernel > Services -- imperative shell.  Owns its unit of work.

Invariants enforced:
    - A batch is created with at least one item (empty requests rejected).
    - Every item starts in Pending Verification, like its batch.
    - Batch references are unique: BRW-<PROJECT>-<YEAR>-<NNNN>, the number
      allocated per project and year by SequenceService.
    - Creation is audited like any other workflow action.
    - An asset held by an open batch (Pending Verification through
      Borrowed) cannot be requested again until that batch closes.

Failure modes:
    - UnauthorizedError if the actor's role may not create batches.
    - BatchValidationError listing every problem with the request.
    - IdempotencyKeyConflictError if the key was used for another action.
    - Two submissions racing on one idempotency key: the loser's insert
      fails on the unique key and it returns the winner's batch.
"""

import re
from datetime import timezone, tzinfo
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from borrowing_kernel.domain.authorization import RoleAuthorizationMatrix
from borrowing_kernel.domain.clock import Clock, SystemClock
from borrowing_kernel.domain.dtos import BatchSnapshot, NewBatchRequest
from borrowing_kernel.domain.roles import Actor
from borrowing_kernel.domain.workflow import BORROWING_WORKFLOW, BorrowingStatus, WorkflowAction
from borrowing_kernel.exceptions import (
    BatchNotFoundError,
    BatchValidationError,
    IdempotencyKeyConflictError,
)
from borrowing_kernel.logging_config import LogContext, get_logger
from borrowing_kernel.models.batch import BorrowingBatch, BorrowingItem
from borrowing_kernel.selectors.batch_selector import BatchSelector, batch_to_snapshot
from borrowing_kernel.services.audit_trail import WorkflowAuditTrail
from borrowing_kernel.services.sequence_service import SequenceService

logger = get_logger("services.batch")

BORROWER_NAME_MAX_LENGTH = 100
BORROWER_CONTACT_MAX_LENGTH = 100
_PROJECT_CODE_PATTERN = re.compile(r"^[A-Z0-9][A-Z0-9_-]{0,19}$")

# Item statuses in which an asset is committed to its batch.
_HOLDING_STATUSES = (
    BorrowingStatus.PENDING_VERIFICATION,
    BorrowingStatus.PENDING_APPROVAL,
    BorrowingStatus.APPROVED,
    BorrowingStatus.BORROWED,
)


def format_batch_reference(prefix: str, project_code: str, year: int, number: int) -> str:
    """``format_batch_reference("BRW", "PRJ01", 2025, 7) -> "BRW-PRJ01-2025-0007"``"""
    return f"{prefix}-{project_code}-{year}-{number:04d}"


class BorrowingBatchService:
    """
    Creates borrowing batches.

    Contract:
        ``create_batch`` returns the snapshot of a committed batch in
        Pending Verification, or raises and persists nothing.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        matrix: RoleAuthorizationMatrix | None = None,
        clock: Clock | None = None,
        tz: tzinfo = timezone.utc,
        reference_prefix: str = "BRW",
        default_project_code: str = "GEN",
        recent_audit_entries: int = 5,
    ):
        self._session_factory = session_factory
        self.matrix = matrix or RoleAuthorizationMatrix.default()
        self.clock = clock or SystemClock()
        self.tz = tz
        self._reference_prefix = reference_prefix
        self._default_project_code = default_project_code
        self._recent_audit_entries = recent_audit_entries

    def validate(self, request: NewBatchRequest) -> list[str]:
        """Every problem with *request*; an empty list means it is acceptable."""
        errors: list[str] = []
        today = self.clock.today(self.tz)

        name = (request.borrower_name or "").strip()
        if not name:
            errors.append("borrower_name is required")
        elif len(name) > BORROWER_NAME_MAX_LENGTH:
            errors.append(
                f"borrower_name must be at most {BORROWER_NAME_MAX_LENGTH} characters"
            )

        if request.borrower_contact and len(request.borrower_contact.strip()) > BORROWER_CONTACT_MAX_LENGTH:
            errors.append(
                f"borrower_contact must be at most {BORROWER_CONTACT_MAX_LENGTH} characters"
            )

        if request.borrower_project is not None:
            code = request.borrower_project.strip().upper()
            if not _PROJECT_CODE_PATTERN.match(code):
                errors.append(f"borrower_project {request.borrower_project!r} is not a valid project code")

        if request.expected_return is not None and request.expected_return < today:
            errors.append("expected_return cannot be in the past")

        if not request.items:
            errors.append("at least one item is required")

        seen_assets = set()
        for position, spec in enumerate(request.items, start=1):
            if spec.quantity < 1:
                errors.append(f"item {position}: quantity must be at least 1")
            if spec.asset_id in seen_assets:
                errors.append(f"item {position}: asset {spec.asset_id} is listed more than once")
            seen_assets.add(spec.asset_id)
            if spec.expected_return is not None and spec.expected_return < today:
                errors.append(f"item {position}: expected_return cannot be in the past")

        return errors

    def create_batch(self, request: NewBatchRequest, actor: Actor) -> BatchSnapshot:
        """
        Submit a new borrowing batch.

        Raises:
            UnauthorizedError: the actor's role may not create batches.
            BatchValidationError: the request is incomplete or invalid.
            IdempotencyKeyConflictError: key already used for another action.
        """
        with LogContext.bind(
            actor_id=str(actor.actor_id),
            action=WorkflowAction.CREATE.value,
            idempotency_key=request.idempotency_key,
        ):
            self.matrix.require(WorkflowAction.CREATE, actor.role)

            errors = self.validate(request)
            if errors:
                logger.info("borrowing_request_rejected", extra={"errors": errors})
                raise BatchValidationError(errors)

            session = self._session_factory()
            try:
                with session.begin():
                    replay = self._check_replay(session, request)
                    if replay is not None:
                        return replay
                    errors = self._assets_in_use(session, request)
                    if errors:
                        logger.info("borrowing_request_rejected", extra={"errors": errors})
                        raise BatchValidationError(errors)
                    snapshot = self._insert(session, request, actor)
            except IntegrityError:
                # A concurrent submission may have recorded the same idempotency key first.
                if request.idempotency_key is None:
                    raise
                replay = self._replay_after_race(request)
                if replay is None:
                    raise
                return replay
            finally:
                session.close()

            logger.info(
                "borrowing_batch_created",
                extra={
                    "batch_reference": snapshot.batch_reference,
                    "created_batch_id": str(snapshot.batch_id),
                    "item_count": snapshot.item_count,
                },
            )
            return snapshot

    def _check_replay(self, session: Session, request: NewBatchRequest) -> BatchSnapshot | None:
        key = request.idempotency_key
        if key is None:
            return None
        recorded = WorkflowAuditTrail(session).find_by_idempotency_key(key)
        if recorded is None:
            return None
        if recorded.action is not WorkflowAction.CREATE:
            raise IdempotencyKeyConflictError(key, str(recorded.batch_id), recorded.action.value)
        snapshot = BatchSelector(session, self.tz, self._recent_audit_entries).get_snapshot(
            recorded.batch_id, self.clock.now(),
        )
        if snapshot is None:
            raise BatchNotFoundError(str(recorded.batch_id))
        logger.info("borrowing_batch_replayed", extra={"batch_reference": snapshot.batch_reference})
        return snapshot

    def _replay_after_race(self, request: NewBatchRequest) -> BatchSnapshot | None:
        session = self._session_factory()
        try:
            return self._check_replay(session, request)
        finally:
            session.close()

    def _assets_in_use(self, session: Session, request: NewBatchRequest) -> list[str]:
        """One error per requested asset already held by an open batch."""
        asset_ids = {spec.asset_id for spec in request.items}
        held = dict(
            session.execute(
                select(BorrowingItem.asset_id, BorrowingBatch.batch_reference)
                .join(BorrowingBatch, BorrowingItem.batch_id == BorrowingBatch.id)
                .where(BorrowingItem.asset_id.in_(asset_ids))
                .where(BorrowingItem.status.in_(_HOLDING_STATUSES))
            ).all()
        )
        return [
            f"item {position}: asset {spec.asset_id} is already in batch {held[spec.asset_id]}"
            for position, spec in enumerate(request.items, start=1)
            if spec.asset_id in held
        ]

    def _insert(self, session: Session, request: NewBatchRequest, actor: Actor) -> BatchSnapshot:
        now = self.clock.now()
        project_code = (
            request.borrower_project.strip().upper()
            if request.borrower_project
            else self._default_project_code
        )
        year = now.astimezone(self.tz).year
        number = SequenceService(session).next_value(
            SequenceService.reference_sequence(project_code, year)
        )
        reference = format_batch_reference(self._reference_prefix, project_code, year, number)
        initial = BORROWING_WORKFLOW.initial_state

        batch = BorrowingBatch(
            id=uuid4(),
            batch_reference=reference,
            borrower_name=request.borrower_name.strip(),
            borrower_contact=(request.borrower_contact or "").strip() or None,
            borrower_project=project_code if request.borrower_project else None,
            purpose=(request.purpose or "").strip() or None,
            status=initial,
            created_at=now,
            updated_at=now,
            created_by_id=actor.actor_id,
        )
        for position, spec in enumerate(request.items, start=1):
            batch.items.append(
                BorrowingItem(
                    id=uuid4(),
                    position=position,
                    asset_id=spec.asset_id,
                    quantity=spec.quantity,
                    serial_number=spec.serial_number,
                    expected_return=spec.expected_return or request.expected_return,
                    notes=spec.notes,
                    status=initial,
                )
            )
        session.add(batch)
        session.flush()

        trail = WorkflowAuditTrail(session)
        trail.record(
            batch_id=batch.id,
            action=WorkflowAction.CREATE,
            actor=actor,
            from_status=None,
            to_status=initial,
            occurred_at=now,
            notes=batch.purpose,
            idempotency_key=request.idempotency_key,
            details={
                "batch_reference": reference,
                "borrower_name": batch.borrower_name,
                "item_count": len(batch.items),
                "total_quantity": sum(item.quantity for item in batch.items),
            },
        )
        entries = BatchSelector(session, self.tz, self._recent_audit_entries).recent_audit(batch.id)
        return batch_to_snapshot(batch, now, self.tz, entries)
