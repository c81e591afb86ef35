"""Tests for the batch aggregate status resolver (domain/aggregate.py)."""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from uuid import uuid4

import pytest

from borrowing_kernel.domain.aggregate import aggregate_status, resolve_stored_status
from borrowing_kernel.domain.workflow import BorrowingStatus, DisplayStatus
from borrowing_kernel.exceptions import ConsistencyError

NOW = datetime(2025, 1, 12, 9, 0, tzinfo=timezone.utc)


@dataclass(frozen=True)
class _Item:
    status: BorrowingStatus
    expected_return: date | None = None


def _items(status, *due_dates):
    return [_Item(status, d) for d in due_dates]


class TestResolveStoredStatus:

    def test_shared_status(self):
        items = _items(BorrowingStatus.APPROVED, None, None)
        assert resolve_stored_status(items) is BorrowingStatus.APPROVED

    def test_empty_batch_is_inconsistent(self):
        with pytest.raises(ConsistencyError) as exc_info:
            resolve_stored_status([], batch_id="b-1")
        assert exc_info.value.batch_id == "b-1"
        assert exc_info.value.code == "CONSISTENCY_ERROR"

    def test_mixed_item_statuses_are_inconsistent(self):
        items = [
            _Item(BorrowingStatus.BORROWED, date(2025, 1, 20)),
            _Item(BorrowingStatus.RETURNED, date(2025, 1, 20)),
        ]
        batch_id = uuid4()
        with pytest.raises(ConsistencyError) as exc_info:
            resolve_stored_status(items, batch_id)
        assert set(exc_info.value.statuses) == {"Borrowed", "Returned"}
        assert exc_info.value.batch_id == str(batch_id)

    def test_header_disagreeing_with_items_is_inconsistent(self):
        items = _items(BorrowingStatus.APPROVED, None)
        with pytest.raises(ConsistencyError):
            resolve_stored_status(items, header_status=BorrowingStatus.PENDING_APPROVAL)

    def test_header_given_as_string(self):
        items = _items(BorrowingStatus.APPROVED, None)
        assert resolve_stored_status(items, header_status="Approved") is BorrowingStatus.APPROVED


class TestAggregateStatus:

    def test_borrowed_batch_with_one_overdue_item_is_overdue(self):
        items = _items(BorrowingStatus.BORROWED, date(2025, 1, 20), date(2025, 1, 10))
        assert aggregate_status(items, NOW) is DisplayStatus.OVERDUE

    def test_borrowed_batch_all_within_due_date(self):
        items = _items(BorrowingStatus.BORROWED, date(2025, 1, 20), date(2025, 1, 12))
        assert aggregate_status(items, NOW) is DisplayStatus.BORROWED

    def test_returned_batch_is_never_overdue(self):
        items = _items(BorrowingStatus.RETURNED, date(2025, 1, 1))
        assert aggregate_status(items, NOW) is DisplayStatus.RETURNED

    def test_inconsistency_is_raised_not_resolved(self):
        items = [
            _Item(BorrowingStatus.APPROVED),
            _Item(BorrowingStatus.PENDING_APPROVAL),
        ]
        with pytest.raises(ConsistencyError):
            aggregate_status(items, NOW)
