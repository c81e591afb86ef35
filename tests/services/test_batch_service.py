"""
Tests for BorrowingBatchService (services/batch_service.py).

Covers:
- Creating a batch: initial status, positions, reference format
- Reference numbering per project and year
- Validation errors are collected, not raised one at a time
- Assets already held by an open batch are refused
- Role gating on create
- Idempotent creation
"""

from datetime import date, datetime, timezone
from uuid import uuid4

import pytest

from borrowing_kernel.domain.dtos import NewBatchRequest, NewItemSpec, TransitionPayload
from borrowing_kernel.domain.workflow import BorrowingStatus, WorkflowAction
from borrowing_kernel.exceptions import (
    BatchValidationError,
    IdempotencyKeyConflictError,
    UnauthorizedError,
)
from borrowing_kernel.selectors.batch_selector import BatchSelector
from borrowing_kernel.services.batch_service import BorrowingBatchService, format_batch_reference


def _request(**overrides):
    values = dict(
        borrower_name="Maria Santos",
        borrower_project="prj01",
        items=(NewItemSpec(asset_id=uuid4()), NewItemSpec(asset_id=uuid4(), quantity=3)),
        expected_return=date(2025, 1, 10),
    )
    values.update(overrides)
    return NewBatchRequest(**values)


class TestCreateBatch:

    def test_new_batch_starts_pending_verification(self, batch_service, clerk):
        batch = batch_service.create_batch(_request(), clerk)
        assert batch.status is BorrowingStatus.PENDING_VERIFICATION
        assert all(i.status is BorrowingStatus.PENDING_VERIFICATION for i in batch.items)
        assert batch.created_by_id == clerk.actor_id
        assert batch.item_count == 2
        assert batch.total_quantity == 4
        assert [i.position for i in batch.items] == [1, 2]

    def test_reference_format(self, batch_service, clerk):
        batch = batch_service.create_batch(_request(), clerk)
        assert batch.batch_reference == "BRW-PRJ01-2025-0001"
        assert batch.borrower_project == "PRJ01"

    def test_references_count_per_project(self, batch_service, clerk):
        refs = [batch_service.create_batch(_request(), clerk).batch_reference for _ in range(2)]
        other = batch_service.create_batch(_request(borrower_project="PRJ02"), clerk).batch_reference
        assert refs == ["BRW-PRJ01-2025-0001", "BRW-PRJ01-2025-0002"]
        assert other == "BRW-PRJ02-2025-0001"

    def test_default_project_code(self, batch_service, clerk):
        batch = batch_service.create_batch(_request(borrower_project=None), clerk)
        assert batch.batch_reference == "BRW-GEN-2025-0001"
        assert batch.borrower_project is None

    def test_numbering_restarts_each_year(self, batch_service, clerk, clock):
        batch_service.create_batch(_request(expected_return=None), clerk)
        clock.set_time(datetime(2026, 1, 2, 9, 0, tzinfo=timezone.utc))
        batch = batch_service.create_batch(_request(expected_return=None), clerk)
        assert batch.batch_reference == "BRW-PRJ01-2026-0001"

    def test_item_date_overrides_batch_default(self, batch_service, clerk):
        asset = uuid4()
        batch = batch_service.create_batch(
            _request(items=(NewItemSpec(asset_id=asset, expected_return=date(2025, 1, 20)),)),
            clerk,
        )
        assert batch.items[0].expected_return == date(2025, 1, 20)
        assert batch.items[0].asset_id == asset

    def test_creation_is_audited(self, batch_service, clerk, read_session):
        batch = batch_service.create_batch(_request(purpose="Formworks"), clerk)
        with read_session() as session:
            (entry,) = BatchSelector(session).timeline(batch.batch_id)
        assert entry.action is WorkflowAction.CREATE
        assert entry.from_status is None
        assert entry.to_status is BorrowingStatus.PENDING_VERIFICATION
        assert entry.payload["details"]["batch_reference"] == batch.batch_reference
        assert entry.payload["details"]["total_quantity"] == 4

    def test_custom_prefix(self, session_factory, clock, clerk):
        service = BorrowingBatchService(session_factory, clock=clock, reference_prefix="EQB")
        assert service.create_batch(_request(), clerk).batch_reference.startswith("EQB-PRJ01-")

    def test_format_batch_reference(self):
        assert format_batch_reference("BRW", "PRJ01", 2025, 7) == "BRW-PRJ01-2025-0007"


class TestValidation:

    def test_empty_batch_rejected(self, batch_service, clerk):
        with pytest.raises(BatchValidationError) as exc_info:
            batch_service.create_batch(_request(items=()), clerk)
        assert "at least one item is required" in exc_info.value.errors

    def test_all_errors_reported_together(self, batch_service, clerk):
        asset = uuid4()
        request = _request(
            borrower_name="   ",
            expected_return=date(2025, 1, 1),
            items=(NewItemSpec(asset_id=asset, quantity=0), NewItemSpec(asset_id=asset)),
        )
        with pytest.raises(BatchValidationError) as exc_info:
            batch_service.create_batch(request, clerk)
        errors = exc_info.value.errors
        assert "borrower_name is required" in errors
        assert "expected_return cannot be in the past" in errors
        assert "item 1: quantity must be at least 1" in errors
        assert any("listed more than once" in e for e in errors)
        assert exc_info.value.code == "BATCH_VALIDATION_FAILED"

    def test_borrower_name_length(self, batch_service, clerk):
        with pytest.raises(BatchValidationError):
            batch_service.create_batch(_request(borrower_name="x" * 101), clerk)

    def test_invalid_project_code(self, batch_service, clerk):
        with pytest.raises(BatchValidationError):
            batch_service.create_batch(_request(borrower_project="site #4"), clerk)

    def test_due_today_is_accepted(self, batch_service, clerk, clock):
        batch = batch_service.create_batch(_request(expected_return=clock.today()), clerk)
        assert batch.items[0].expected_return == date(2025, 1, 6)

    def test_nothing_persisted_on_rejection(self, batch_service, clerk, read_session, clock):
        with pytest.raises(BatchValidationError):
            batch_service.create_batch(_request(items=()), clerk)
        with read_session() as session:
            assert BatchSelector(session).list_batches(clock.now()) == []

    @pytest.mark.parametrize(
        "status",
        [
            BorrowingStatus.PENDING_VERIFICATION,
            BorrowingStatus.PENDING_APPROVAL,
            BorrowingStatus.APPROVED,
            BorrowingStatus.BORROWED,
        ],
    )
    def test_asset_held_by_open_batch_rejected(self, batch_service, clerk, make_batch, status):
        holder = make_batch(status)
        taken = holder.items[1].asset_id
        with pytest.raises(BatchValidationError) as exc_info:
            batch_service.create_batch(
                _request(items=(NewItemSpec(asset_id=uuid4()), NewItemSpec(asset_id=taken))),
                clerk,
            )
        assert exc_info.value.errors == [
            f"item 2: asset {taken} is already in batch {holder.batch_reference}",
        ]

    @pytest.mark.parametrize("status", [BorrowingStatus.RETURNED, BorrowingStatus.CANCELED])
    def test_asset_free_again_once_batch_closed(self, batch_service, clerk, make_batch, status):
        closed = make_batch(status)
        reused = closed.items[0].asset_id
        batch = batch_service.create_batch(_request(items=(NewItemSpec(asset_id=reused),)), clerk)
        assert batch.items[0].asset_id == reused


class TestRoleAndIdempotency:

    def test_project_manager_may_not_create(self, batch_service, project_manager):
        with pytest.raises(UnauthorizedError):
            batch_service.create_batch(_request(), project_manager)

    def test_warehouseman_may_create(self, batch_service, warehouseman):
        assert batch_service.create_batch(_request(), warehouseman).status is BorrowingStatus.PENDING_VERIFICATION

    def test_same_key_returns_same_batch(self, batch_service, clerk, read_session, clock):
        first = batch_service.create_batch(_request(idempotency_key="req-42"), clerk)
        second = batch_service.create_batch(_request(idempotency_key="req-42"), clerk)
        assert second.batch_id == first.batch_id
        with read_session() as session:
            assert len(BatchSelector(session).list_batches(clock.now())) == 1

    def test_key_recorded_by_concurrent_submission_replays(self, batch_service, clerk, monkeypatch):
        first = batch_service.create_batch(_request(idempotency_key="req-77"), clerk)

        # The second submission misses the key on its first lookup, as if the
        # first one committed while it was still inserting.
        original = BorrowingBatchService._check_replay
        lookups = []

        def miss_once(service, session, request):
            lookups.append(request.idempotency_key)
            if len(lookups) == 1:
                return None
            return original(service, session, request)

        monkeypatch.setattr(BorrowingBatchService, "_check_replay", miss_once)
        second = batch_service.create_batch(_request(idempotency_key="req-77"), clerk)
        assert second.batch_id == first.batch_id
        assert len(lookups) == 2

    def test_key_used_by_transition_conflicts(self, batch_service, workflow_engine, clerk, project_manager):
        batch = batch_service.create_batch(_request(), clerk)
        workflow_engine.apply_transition(
            batch.batch_id, WorkflowAction.VERIFY, project_manager,
            TransitionPayload(idempotency_key="shared"),
        )
        with pytest.raises(IdempotencyKeyConflictError):
            batch_service.create_batch(_request(idempotency_key="shared"), clerk)
