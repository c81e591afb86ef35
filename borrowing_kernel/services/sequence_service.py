"""
SequenceService -- gap-free counters for batch references and audit chains.

Responsibility:
    Hands out 1, 2, 3, ... per named counter.  Two kinds of names exist:
    ``batch_reference:{PROJECT}:{YEAR}`` numbers the human-readable batch
    references, and ``audit:{batch id}`` numbers the entries of one batch's
    audit chain.

Architecture position:
    Kernel > Services.  Called by BorrowingBatchService and
    WorkflowAuditTrail inside their own transactions.

Invariants enforced:
    - The counter row is locked (FOR UPDATE) before it is read, so two
      transactions never receive the same number.  Counting existing rows
      (max + 1) is never used.
    - A number belongs to the caller's transaction; if that transaction
      rolls back, the number is handed out again.

Failure modes:
    - Two transactions creating the same counter at once: the loser's
      INSERT fails inside a savepoint, which is rolled back, and the loser
      increments the winner's row instead.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from borrowing_kernel.logging_config import get_logger
from borrowing_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """
    Counter allocation on the caller's session.

    Never commits; call it inside ``session.begin()``::

        with session.begin():
            number = SequenceService(session).next_value(
                SequenceService.reference_sequence("PRJ01", 2025)
            )
    """

    @staticmethod
    def audit_sequence(batch_id: UUID | str) -> str:
        return f"audit:{batch_id}"

    @staticmethod
    def reference_sequence(project_code: str, year: int) -> str:
        return f"batch_reference:{project_code}:{year}"

    def __init__(self, session: Session):
        self._session = session

    def next_value(self, sequence_name: str) -> int:
        """Lock, increment and return the counter; the first value is 1."""
        counter = self._lock(sequence_name)
        if counter is None:
            counter = self._create(sequence_name)
            if counter is None:
                value = 1
                logger.debug("sequence_allocated", extra={"sequence_name": sequence_name, "value": value})
                return value

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Last value handed out, or None if the counter was never used."""
        return self._session.execute(
            select(SequenceCounter.current_value)
            .where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()

    # ------------------------------------------------------------------

    def _lock(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _create(self, sequence_name: str) -> SequenceCounter | None:
        """
        Insert the counter at 1.

        Returns None when this call created it (the caller gets 1), or the
        locked row another transaction created first.
        """
        savepoint = self._session.begin_nested()
        try:
            self._session.add(SequenceCounter(name=sequence_name, current_value=1))
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_create_lost_race", extra={"sequence_name": sequence_name})
            counter = self._lock(sequence_name)
            if counter is None:
                raise
            return counter
        savepoint.commit()
        return None
