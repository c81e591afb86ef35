"""
Borrowing workflow types (``borrowing_kernel.domain.workflow``).

Responsibility
--------------
Closed enums for stored and display statuses, the workflow actions, and
the single table of legal transitions.  Every other component asks this
table which pre-states an action accepts and which post-state it yields.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* Terminal states (Returned, Canceled) have no outgoing transitions.
* ``Overdue`` is a display status only and never appears in the table.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from borrowing_kernel.exceptions import UnsupportedActionError


class BorrowingStatus(str, Enum):
    """Workflow status stored on a batch header and on each of its items."""

    PENDING_VERIFICATION = "Pending Verification"
    PENDING_APPROVAL = "Pending Approval"
    APPROVED = "Approved"
    BORROWED = "Borrowed"
    RETURNED = "Returned"
    CANCELED = "Canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class DisplayStatus(str, Enum):
    """Status shown to callers: every stored status plus the derived Overdue."""

    PENDING_VERIFICATION = "Pending Verification"
    PENDING_APPROVAL = "Pending Approval"
    APPROVED = "Approved"
    BORROWED = "Borrowed"
    OVERDUE = "Overdue"
    RETURNED = "Returned"
    CANCELED = "Canceled"

    @classmethod
    def from_stored(cls, status: BorrowingStatus) -> DisplayStatus:
        return cls(status.value)

    def to_stored(self) -> BorrowingStatus:
        """Map back to the stored status (Overdue is stored as Borrowed)."""
        if self is DisplayStatus.OVERDUE:
            return BorrowingStatus.BORROWED
        return BorrowingStatus(self.value)


class WorkflowAction(str, Enum):
    """Actions an actor may request on a borrowing batch."""

    CREATE = "create"
    VERIFY = "verify"
    APPROVE = "approve"
    RELEASE = "release"
    RETURN = "return"
    CANCEL = "cancel"
    EXTEND = "extend"


class ReturnCondition(str, Enum):
    """Condition of an item recorded by the warehouse on return."""

    GOOD = "Good"
    DAMAGED = "Damaged"
    LOST = "Lost"
    MISSING_PARTS = "Missing Parts"

    @property
    def is_incident_candidate(self) -> bool:
        return self is not ReturnCondition.GOOD


TERMINAL_STATUSES: frozenset[BorrowingStatus] = frozenset(
    {BorrowingStatus.RETURNED, BorrowingStatus.CANCELED}
)


@dataclass(frozen=True)
class Guard:
    """A condition that must be satisfied before a transition fires.

    Contract: frozen, descriptive only.
    Non-goals: does not evaluate the condition -- see ``domain.guards``.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A legal state change for one action from one pre-state.

    ``stage`` names the batch columns that record who performed the
    transition (``verified``, ``approved``...).  Self-loops such as
    Extend leave the status unchanged.
    """
    from_state: BorrowingStatus
    to_state: BorrowingStatus
    action: WorkflowAction
    guards: tuple[Guard, ...] = ()
    stage: str | None = None

    @property
    def changes_status(self) -> bool:
        return self.from_state is not self.to_state


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for the borrowing lifecycle.

    Contract: frozen; ``transitions`` reference only states in ``states``.
    Guarantees: ``initial_state`` is a member of ``states``.
    """
    name: str
    description: str
    initial_state: BorrowingStatus
    states: tuple[BorrowingStatus, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[BorrowingStatus, ...] = ()

    def find_transition(
        self, from_state: BorrowingStatus, action: WorkflowAction,
    ) -> Transition | None:
        for transition in self.transitions:
            if transition.action is action and transition.from_state is from_state:
                return transition
        return None

    def allowed_from(self, action: WorkflowAction) -> tuple[BorrowingStatus, ...]:
        """Pre-states accepted by *action*, in workflow order.

        Raises:
            UnsupportedActionError: *action* has no transition at all.
        """
        states = tuple(
            state for state in self.states
            if self.find_transition(state, action) is not None
        )
        if not states:
            raise UnsupportedActionError(action.value)
        return states

    def actions_from(self, state: BorrowingStatus) -> tuple[WorkflowAction, ...]:
        return tuple(
            t.action for t in self.transitions if t.from_state is state
        )


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

REASON_REQUIRED = Guard(
    name="reason_required",
    description="A non-empty reason must accompany the request",
)

EXPECTED_RETURN_SET = Guard(
    name="expected_return_set",
    description="Every item must have an expected return date before release",
)

ACTUAL_RETURN_NOT_FUTURE = Guard(
    name="actual_return_not_future",
    description="The recorded return time may not be later than now",
)

ITEMS_BELONG_TO_BATCH = Guard(
    name="items_belong_to_batch",
    description="Item ids referenced by the request must belong to the batch",
)

EXTENSION_DATE_VALID = Guard(
    name="extension_date_valid",
    description="A new expected return date is given and is not earlier than the current one",
)


# ---------------------------------------------------------------------------
# The borrowing workflow
# ---------------------------------------------------------------------------

_S = BorrowingStatus
_A = WorkflowAction

BORROWING_TRANSITIONS: tuple[Transition, ...] = (
    Transition(
        _S.PENDING_VERIFICATION, _S.PENDING_APPROVAL, _A.VERIFY,
        stage="verified",
    ),
    Transition(
        _S.PENDING_APPROVAL, _S.APPROVED, _A.APPROVE,
        stage="approved",
    ),
    Transition(
        _S.APPROVED, _S.BORROWED, _A.RELEASE,
        guards=(ITEMS_BELONG_TO_BATCH, EXPECTED_RETURN_SET),
        stage="released",
    ),
    Transition(
        _S.BORROWED, _S.RETURNED, _A.RETURN,
        guards=(ITEMS_BELONG_TO_BATCH, ACTUAL_RETURN_NOT_FUTURE),
        stage="returned",
    ),
    Transition(
        _S.PENDING_VERIFICATION, _S.CANCELED, _A.CANCEL,
        guards=(REASON_REQUIRED,), stage="canceled",
    ),
    Transition(
        _S.PENDING_APPROVAL, _S.CANCELED, _A.CANCEL,
        guards=(REASON_REQUIRED,), stage="canceled",
    ),
    Transition(
        _S.APPROVED, _S.CANCELED, _A.CANCEL,
        guards=(REASON_REQUIRED,), stage="canceled",
    ),
    Transition(
        _S.BORROWED, _S.BORROWED, _A.EXTEND,
        guards=(REASON_REQUIRED, ITEMS_BELONG_TO_BATCH, EXTENSION_DATE_VALID),
    ),
)

BORROWING_WORKFLOW = Workflow(
    name="equipment_borrowing",
    description="Maker, verifier, approver, warehouse release and return of borrowed equipment",
    initial_state=_S.PENDING_VERIFICATION,
    states=tuple(BorrowingStatus),
    transitions=BORROWING_TRANSITIONS,
    terminal_states=(_S.RETURNED, _S.CANCELED),
)
