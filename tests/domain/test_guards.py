"""
Tests for GuardExecutor and the borrowing guards (domain/guards.py).

Guards are evaluated against a GuardContext before anything is mutated.
A failing guard names itself and the offending field.
"""

from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest

from borrowing_kernel.domain.dtos import ItemPayload, TransitionPayload
from borrowing_kernel.domain.guards import (
    GuardContext,
    GuardExecutor,
    GuardItem,
    GuardViolation,
    default_guard_executor,
)
from borrowing_kernel.domain.workflow import (
    BORROWING_WORKFLOW,
    BorrowingStatus,
    Guard,
    Transition,
    WorkflowAction,
)
from borrowing_kernel.exceptions import GuardFailedError

NOW = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def executor():
    return default_guard_executor()


def _context(action, items, payload=None):
    return GuardContext(
        batch_id=uuid4(),
        action=action,
        items=tuple(items),
        payload=payload or TransitionPayload(),
        now=NOW,
    )


def _transition(from_state, action):
    return BORROWING_WORKFLOW.find_transition(from_state, action)


class TestReasonRequired:

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_blank_reason_fails(self, executor, reason):
        ctx = _context(
            WorkflowAction.CANCEL,
            [GuardItem(uuid4(), None)],
            TransitionPayload(reason=reason),
        )
        with pytest.raises(GuardFailedError) as exc_info:
            executor.check(_transition(BorrowingStatus.APPROVED, WorkflowAction.CANCEL), ctx)
        assert exc_info.value.guard == "reason_required"
        assert exc_info.value.field == "reason"

    def test_reason_given_passes(self, executor):
        ctx = _context(
            WorkflowAction.CANCEL,
            [GuardItem(uuid4(), None)],
            TransitionPayload(reason="Project postponed"),
        )
        executor.check(_transition(BorrowingStatus.APPROVED, WorkflowAction.CANCEL), ctx)


class TestReleaseGuards:

    def test_missing_expected_return_names_the_item(self, executor):
        dated, undated = GuardItem(uuid4(), date(2025, 1, 10)), GuardItem(uuid4(), None)
        ctx = _context(WorkflowAction.RELEASE, [dated, undated])
        with pytest.raises(GuardFailedError) as exc_info:
            executor.check(_transition(BorrowingStatus.APPROVED, WorkflowAction.RELEASE), ctx)
        assert exc_info.value.guard == "expected_return_set"
        assert exc_info.value.field == f"items[{undated.item_id}].expected_return"

    def test_expected_return_supplied_with_release_passes(self, executor):
        undated = GuardItem(uuid4(), None)
        payload = TransitionPayload(items={undated.item_id: ItemPayload(expected_return=date(2025, 1, 9))})
        ctx = _context(WorkflowAction.RELEASE, [undated], payload)
        executor.check(_transition(BorrowingStatus.APPROVED, WorkflowAction.RELEASE), ctx)

    def test_foreign_item_is_rejected(self, executor):
        stranger = uuid4()
        payload = TransitionPayload(items={stranger: ItemPayload(serial_number="SN-1")})
        ctx = _context(WorkflowAction.RELEASE, [GuardItem(uuid4(), date(2025, 1, 10))], payload)
        with pytest.raises(GuardFailedError) as exc_info:
            executor.check(_transition(BorrowingStatus.APPROVED, WorkflowAction.RELEASE), ctx)
        assert exc_info.value.guard == "items_belong_to_batch"
        assert exc_info.value.field == f"items[{stranger}]"


class TestReturnGuards:

    def test_future_return_time_fails(self, executor):
        payload = TransitionPayload(actual_return=NOW + timedelta(hours=1))
        ctx = _context(WorkflowAction.RETURN, [GuardItem(uuid4(), date(2025, 1, 10))], payload)
        with pytest.raises(GuardFailedError) as exc_info:
            executor.check(_transition(BorrowingStatus.BORROWED, WorkflowAction.RETURN), ctx)
        assert exc_info.value.field == "actual_return"

    def test_past_return_time_passes(self, executor):
        payload = TransitionPayload(actual_return=NOW - timedelta(hours=1))
        ctx = _context(WorkflowAction.RETURN, [GuardItem(uuid4(), date(2025, 1, 10))], payload)
        executor.check(_transition(BorrowingStatus.BORROWED, WorkflowAction.RETURN), ctx)


class TestExtensionGuards:

    def _extend(self):
        return _transition(BorrowingStatus.BORROWED, WorkflowAction.EXTEND)

    def test_new_date_is_required(self, executor):
        ctx = _context(
            WorkflowAction.EXTEND,
            [GuardItem(uuid4(), date(2025, 1, 10))],
            TransitionPayload(reason="Rain delay"),
        )
        with pytest.raises(GuardFailedError) as exc_info:
            executor.check(self._extend(), ctx)
        assert exc_info.value.guard == "extension_date_valid"
        assert exc_info.value.field == "new_expected_return"

    def test_earlier_date_is_rejected(self, executor):
        ctx = _context(
            WorkflowAction.EXTEND,
            [GuardItem(uuid4(), date(2025, 1, 10))],
            TransitionPayload(reason="Rain delay", new_expected_return=date(2025, 1, 8)),
        )
        with pytest.raises(GuardFailedError):
            executor.check(self._extend(), ctx)

    def test_only_selected_items_are_compared(self, executor):
        near, far = GuardItem(uuid4(), date(2025, 1, 10)), GuardItem(uuid4(), date(2025, 2, 1))
        ctx = _context(
            WorkflowAction.EXTEND,
            [near, far],
            TransitionPayload(
                reason="Rain delay",
                new_expected_return=date(2025, 1, 15),
                item_ids=(near.item_id,),
            ),
        )
        executor.check(self._extend(), ctx)

    def test_reason_checked_before_date(self, executor):
        ctx = _context(
            WorkflowAction.EXTEND,
            [GuardItem(uuid4(), date(2025, 1, 10))],
            TransitionPayload(new_expected_return=date(2025, 1, 8)),
        )
        with pytest.raises(GuardFailedError) as exc_info:
            executor.check(self._extend(), ctx)
        assert exc_info.value.guard == "reason_required"


class TestGuardExecutor:

    def test_unregistered_guard_fails_closed(self):
        executor = GuardExecutor()
        guard = Guard(name="site_safety_briefing", description="Borrower attended the briefing")
        transition = Transition(
            BorrowingStatus.APPROVED, BorrowingStatus.BORROWED, WorkflowAction.RELEASE,
            guards=(guard,),
        )
        with pytest.raises(GuardFailedError) as exc_info:
            executor.check(transition, _context(WorkflowAction.RELEASE, [GuardItem(uuid4(), None)]))
        assert exc_info.value.guard == "site_safety_briefing"

    def test_custom_evaluator(self):
        executor = default_guard_executor()
        executor.register(
            "reason_required",
            lambda ctx: GuardViolation("reason", "house rule: always refuse"),
        )
        ctx = _context(
            WorkflowAction.CANCEL,
            [GuardItem(uuid4(), None)],
            TransitionPayload(reason="anything"),
        )
        with pytest.raises(GuardFailedError) as exc_info:
            executor.check(_transition(BorrowingStatus.APPROVED, WorkflowAction.CANCEL), ctx)
        assert exc_info.value.detail == "house rule: always refuse"

    def test_transition_without_guards_always_passes(self, executor):
        ctx = _context(WorkflowAction.VERIFY, [GuardItem(uuid4(), None)])
        executor.check(_transition(BorrowingStatus.PENDING_VERIFICATION, WorkflowAction.VERIFY), ctx)
