"""
WorkflowAuditTrail -- append-only, hash-chained history of workflow actions.

Responsibility:
    Records exactly one WorkflowAuditEntry per applied workflow action
    (including batch creation), links each entry to the previous entry of
    the same batch via a hash chain, and validates that chain on demand.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the workflow engine
    and the batch service inside their unit of work; never commits.

Invariants enforced:
    - One entry per applied action, written in the same transaction as the
      status change it describes.
    - Per-batch seq is allocated by SequenceService (never max + 1).
    - hash = H("BorrowingBatch" | batch_id | action | payload_hash | prev_hash).
    - payload_hash = H(canonical JSON of the stored payload).

Failure modes:
    - AuditChainBrokenError from ``validate_chain`` on any mismatch.
    - IntegrityError when an idempotency key is reused by a concurrent
      transaction (the engine maps this to a replay or a conflict).
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from borrowing_kernel.domain.roles import Actor
from borrowing_kernel.domain.workflow import BorrowingStatus, WorkflowAction
from borrowing_kernel.exceptions import AuditChainBrokenError
from borrowing_kernel.logging_config import get_logger
from borrowing_kernel.models.audit_entry import WorkflowAuditEntry
from borrowing_kernel.services.sequence_service import SequenceService
from borrowing_kernel.utils.hashing import hash_audit_entry, hash_payload, to_json_safe

logger = get_logger("services.audit_trail")


class WorkflowAuditTrail:
    """
    Writer and validator for the per-batch workflow audit chain.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    ENTITY_TYPE = "BorrowingBatch"

    def __init__(self, session: Session):
        self._session = session
        self._sequence_service = SequenceService(session)

    def _last_entry(self, batch_id: UUID) -> WorkflowAuditEntry | None:
        return self._session.execute(
            select(WorkflowAuditEntry)
            .where(WorkflowAuditEntry.batch_id == batch_id)
            .order_by(WorkflowAuditEntry.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def record(
        self,
        batch_id: UUID,
        action: WorkflowAction,
        actor: Actor,
        from_status: BorrowingStatus | None,
        to_status: BorrowingStatus,
        occurred_at: datetime,
        notes: str | None = None,
        idempotency_key: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> WorkflowAuditEntry:
        """
        Append one audit entry for *batch_id* and flush it.

        Postconditions:
            - The entry's seq is one greater than the batch's previous entry.
            - ``entry.prev_hash`` equals the previous entry's hash (None for
              the first entry of the batch).
        """
        seq = self._sequence_service.next_value(
            SequenceService.audit_sequence(batch_id)
        )
        previous = self._last_entry(batch_id)
        prev_hash = previous.hash if previous is not None else None

        payload = to_json_safe({
            "batch_id": batch_id,
            "seq": seq,
            "action": action,
            "actor_id": actor.actor_id,
            "actor_role": actor.role_name,
            "from_status": from_status,
            "to_status": to_status,
            "occurred_at": occurred_at,
            "notes": notes,
            "idempotency_key": idempotency_key,
            "details": details or {},
        })
        payload_hash = hash_payload(payload)
        entry_hash = hash_audit_entry(
            entity_type=self.ENTITY_TYPE,
            entity_id=str(batch_id),
            action=action.value,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
        )

        entry = WorkflowAuditEntry(
            batch_id=batch_id,
            seq=seq,
            action=action,
            actor_id=actor.actor_id,
            actor_role=actor.role_name,
            from_status=from_status,
            to_status=to_status,
            occurred_at=occurred_at,
            notes=notes,
            idempotency_key=idempotency_key,
            payload=payload,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=entry_hash,
        )
        self._session.add(entry)
        self._session.flush()

        logger.info(
            "workflow_audit_recorded",
            extra={
                "audit_seq": seq,
                "audit_action": action.value,
                "from_status": from_status.value if from_status else None,
                "to_status": to_status.value,
            },
        )
        return entry

    def find_by_idempotency_key(self, idempotency_key: str) -> WorkflowAuditEntry | None:
        return self._session.execute(
            select(WorkflowAuditEntry)
            .where(WorkflowAuditEntry.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    def entries_for(self, batch_id: UUID) -> list[WorkflowAuditEntry]:
        """All entries of *batch_id*, oldest first."""
        return list(
            self._session.execute(
                select(WorkflowAuditEntry)
                .where(WorkflowAuditEntry.batch_id == batch_id)
                .order_by(WorkflowAuditEntry.seq)
            ).scalars().all()
        )

    def validate_chain(self, batch_id: UUID) -> bool:
        """
        Validate the audit chain of one batch.

        Checks, entry by entry: seq runs 1..n without gaps, the stored
        payload still hashes to ``payload_hash``, the chain hash recomputes,
        and ``prev_hash`` links to the predecessor.

        Raises:
            AuditChainBrokenError: at the first entry that fails.
        """
        entries = self.entries_for(batch_id)
        previous: WorkflowAuditEntry | None = None

        for expected_seq, entry in enumerate(entries, start=1):
            if entry.seq != expected_seq:
                self._broken(entry, f"seq {expected_seq}", f"seq {entry.seq}")

            recomputed_payload_hash = hash_payload(entry.payload)
            if recomputed_payload_hash != entry.payload_hash:
                self._broken(entry, recomputed_payload_hash, entry.payload_hash)

            expected_prev = previous.hash if previous is not None else None
            if entry.prev_hash != expected_prev:
                self._broken(entry, expected_prev or "None", entry.prev_hash or "None")

            expected_hash = hash_audit_entry(
                entity_type=self.ENTITY_TYPE,
                entity_id=str(entry.batch_id),
                action=entry.action.value,
                payload_hash=entry.payload_hash,
                prev_hash=entry.prev_hash,
            )
            if entry.hash != expected_hash:
                self._broken(entry, expected_hash, entry.hash)

            previous = entry

        return True

    def _broken(self, entry: WorkflowAuditEntry, expected: str, actual: str) -> None:
        error = AuditChainBrokenError(str(entry.id), expected, actual)
        logger.critical(
            "audit_chain_broken",
            extra={"audit_seq": entry.seq, "batch": str(entry.batch_id)},
        )
        raise error
