"""
Concurrency tests for same-batch serialization.

Threads race real transitions against one SQLite database file.  SQLite
ignores SELECT ... FOR UPDATE, so these tests exercise the in-process
BatchLockRegistry plus SQLite's own write lock (BEGIN IMMEDIATE).
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier
from uuid import uuid4

import pytest

from borrowing_kernel.domain.dtos import NewBatchRequest, NewItemSpec, TransitionPayload
from borrowing_kernel.domain.workflow import BorrowingStatus, WorkflowAction
from borrowing_kernel.exceptions import InvalidStateError
from borrowing_kernel.selectors.batch_selector import BatchSelector
from borrowing_kernel.services.locking import BatchLockRegistry

pytestmark = pytest.mark.concurrency


def _race(num_threads, fn):
    """Run *fn(i)* on *num_threads* threads released together; return outcomes."""
    barrier = Barrier(num_threads, timeout=30)

    def _run(i):
        barrier.wait()
        try:
            return fn(i)
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=num_threads) as pool:
        return list(pool.map(_run, range(num_threads)))


class TestSameBatchRace:

    def test_two_approvals_exactly_one_wins(
        self, make_batch, workflow_engine, asset_director, finance_director, read_session,
    ):
        batch = make_batch(BorrowingStatus.PENDING_APPROVAL)
        approvers = [asset_director, finance_director]

        outcomes = _race(2, lambda i: workflow_engine.apply_transition(
            batch.batch_id, WorkflowAction.APPROVE, approvers[i],
        ))

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        losers = [o for o in outcomes if isinstance(o, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], InvalidStateError)
        assert losers[0].current_status == "Approved"

        with read_session() as session:
            entries = BatchSelector(session).timeline(batch.batch_id)
        assert [e.action for e in entries].count(WorkflowAction.APPROVE) == 1

    def test_release_and_cancel_race(self, make_batch, workflow_engine, warehouseman, asset_director):
        batch = make_batch(BorrowingStatus.APPROVED)

        def act(i):
            if i == 0:
                return workflow_engine.apply_transition(batch.batch_id, WorkflowAction.RELEASE, warehouseman)
            return workflow_engine.apply_transition(
                batch.batch_id, WorkflowAction.CANCEL, asset_director,
                TransitionPayload(reason="Site closed"),
            )

        outcomes = _race(2, act)
        winners = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(winners) == 1
        assert sum(isinstance(o, InvalidStateError) for o in outcomes) == 1

        final = workflow_engine.get_snapshot(batch.batch_id)
        assert final.status is winners[0].status
        assert {i.status for i in final.items} == {final.status}

    def test_many_threads_one_verification(self, make_batch, workflow_engine, project_manager):
        batch = make_batch()
        outcomes = _race(6, lambda i: workflow_engine.apply_transition(
            batch.batch_id, WorkflowAction.VERIFY, project_manager,
        ))
        assert sum(not isinstance(o, Exception) for o in outcomes) == 1
        assert all(isinstance(o, InvalidStateError) for o in outcomes if isinstance(o, Exception))

    def test_replayed_key_applies_once(self, make_batch, workflow_engine, project_manager, read_session):
        batch = make_batch()
        payload = TransitionPayload(idempotency_key=f"{batch.batch_id}:verify:double-click")
        outcomes = _race(4, lambda i: workflow_engine.apply_transition(
            batch.batch_id, WorkflowAction.VERIFY, project_manager, payload,
        ))
        assert all(o.status is BorrowingStatus.PENDING_APPROVAL for o in outcomes)
        with read_session() as session:
            assert len(BatchSelector(session).timeline(batch.batch_id)) == 2


class TestDifferentBatches:

    def test_different_batches_all_succeed(self, make_batch, workflow_engine, project_manager):
        batches = [make_batch() for _ in range(4)]
        outcomes = _race(4, lambda i: workflow_engine.apply_transition(
            batches[i].batch_id, WorkflowAction.VERIFY, project_manager,
        ))
        assert all(o.status is BorrowingStatus.PENDING_APPROVAL for o in outcomes)

    def test_concurrent_creation_gets_distinct_references(self, batch_service, clerk):
        def create(i):
            return batch_service.create_batch(
                NewBatchRequest(
                    borrower_name=f"Crew {i}",
                    borrower_project="PRJ07",
                    items=(NewItemSpec(asset_id=uuid4()),),
                ),
                clerk,
            )

        outcomes = _race(5, create)
        references = sorted(o.batch_reference for o in outcomes)
        assert references == [f"BRW-PRJ07-2025-{n:04d}" for n in range(1, 6)]


class TestBatchLockRegistry:

    def test_other_batch_is_not_blocked(self):
        registry = BatchLockRegistry()
        first, second = uuid4(), uuid4()
        entered = threading.Event()

        def hold_second():
            with registry.hold(second, timeout=1):
                entered.set()

        with registry.hold(first):
            worker = threading.Thread(target=hold_second)
            worker.start()
            assert entered.wait(timeout=2)
            worker.join()

    def test_same_batch_waits(self):
        registry = BatchLockRegistry()
        batch_id = uuid4()
        with registry.hold(batch_id):
            assert registry.is_locked(batch_id)
            result = []

            def try_hold():
                try:
                    with registry.hold(batch_id, timeout=0.05):
                        result.append("acquired")
                except TimeoutError:
                    result.append("timeout")

            worker = threading.Thread(target=try_hold)
            worker.start()
            worker.join()
        assert result == ["timeout"]

    def test_released_after_block(self):
        registry = BatchLockRegistry()
        batch_id = uuid4()
        with registry.hold(batch_id):
            pass
        assert not registry.is_locked(batch_id)
        assert len(registry) == 0

    def test_released_when_block_raises(self):
        registry = BatchLockRegistry()
        batch_id = uuid4()
        with pytest.raises(RuntimeError):
            with registry.hold(batch_id):
                raise RuntimeError("boom")
        assert len(registry) == 0

    def test_waiter_gets_lock_after_release(self):
        registry = BatchLockRegistry()
        batch_id = uuid4()
        order = []

        def second():
            with registry.hold(batch_id, timeout=5):
                order.append("second")

        with registry.hold(batch_id):
            worker = threading.Thread(target=second)
            worker.start()
            time.sleep(0.05)
            order.append("first")
        worker.join()
        assert order == ["first", "second"]
