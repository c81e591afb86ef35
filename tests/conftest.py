"""
Pytest fixtures for the borrowing kernel test suite.

Provides:
- A file-backed SQLite database per test (tables created, immutability
  listeners registered)
- A DeterministicClock pinned to Monday 2025-01-06 09:00 UTC
- Actors for every role
- The workflow engine and batch service wired to the test database
- ``make_batch`` to create a batch and drive it to any status
- ``captured_logs`` for asserting on structured log output
"""

import json
import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from io import StringIO
from uuid import uuid4

import pytest

from borrowing_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from borrowing_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from borrowing_kernel.domain.clock import DeterministicClock
from borrowing_kernel.domain.dtos import NewBatchRequest, NewItemSpec, TransitionPayload
from borrowing_kernel.domain.roles import Actor, ActorRole
from borrowing_kernel.domain.workflow import BorrowingStatus, WorkflowAction
from borrowing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from borrowing_kernel.services.batch_service import BorrowingBatchService
from borrowing_kernel.services.workflow_engine import BorrowingWorkflowEngine

START_TIME = datetime(2025, 1, 6, 9, 0, 0, tzinfo=timezone.utc)
DEFAULT_DUE = date(2025, 1, 10)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture borrowing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, workflow_engine):
            workflow_engine.apply_transition(...)
            logs = captured_logs()
            assert any(r["message"] == "workflow_transition" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("borrowing_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "concurrency: mark test as running real threads against the database"
    )


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    """A fresh SQLite database file per test, with tables and listeners."""
    eng = init_engine_from_url(f"sqlite:///{tmp_path / 'borrowing.db'}", pool_timeout=30)
    create_tables()
    register_immutability_listeners()
    yield eng
    unregister_immutability_listeners()
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def read_session(session_factory):
    """
    Open a short-lived session for reads.

    Close it before calling the engine again: SQLite takes the write lock
    when a transaction begins, so a session left open blocks other writers.
    """

    @contextmanager
    def _open():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    return _open


# =============================================================================
# Time and actors
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(START_TIME)


def _actor(role: ActorRole, name: str) -> Actor:
    return Actor(actor_id=uuid4(), role=role, display_name=name)


@pytest.fixture
def admin():
    return _actor(ActorRole.SYSTEM_ADMIN, "Sys Admin")


@pytest.fixture
def clerk():
    return _actor(ActorRole.SITE_INVENTORY_CLERK, "Site Clerk")


@pytest.fixture
def warehouseman():
    return _actor(ActorRole.WAREHOUSEMAN, "Warehouse")


@pytest.fixture
def project_manager():
    return _actor(ActorRole.PROJECT_MANAGER, "Project Manager")


@pytest.fixture
def asset_director():
    return _actor(ActorRole.ASSET_DIRECTOR, "Asset Director")


@pytest.fixture
def finance_director():
    return _actor(ActorRole.FINANCE_DIRECTOR, "Finance Director")


@pytest.fixture
def procurement_officer():
    return _actor(ActorRole.PROCUREMENT_OFFICER, "Procurement")


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def workflow_engine(session_factory, clock):
    return BorrowingWorkflowEngine(session_factory, clock=clock)


@pytest.fixture
def batch_service(session_factory, clock):
    return BorrowingBatchService(session_factory, clock=clock)


@pytest.fixture
def make_batch(
    batch_service,
    workflow_engine,
    clerk,
    project_manager,
    asset_director,
    warehouseman,
):
    """
    Create a batch and drive it to *status* through the normal stages.

    Returns the snapshot after the last step.  ``item_count`` items are
    created with distinct assets, all due on ``expected_return``.
    """

    steps = (
        (BorrowingStatus.PENDING_APPROVAL, WorkflowAction.VERIFY, project_manager),
        (BorrowingStatus.APPROVED, WorkflowAction.APPROVE, asset_director),
        (BorrowingStatus.BORROWED, WorkflowAction.RELEASE, warehouseman),
        (BorrowingStatus.RETURNED, WorkflowAction.RETURN, warehouseman),
    )

    def _make(
        status: BorrowingStatus = BorrowingStatus.PENDING_VERIFICATION,
        item_count: int = 2,
        expected_return: date | None = DEFAULT_DUE,
        borrower_name: str = "Juan Dela Cruz",
        project: str | None = "PRJ01",
        maker: Actor | None = None,
    ):
        snapshot = batch_service.create_batch(
            NewBatchRequest(
                borrower_name=borrower_name,
                borrower_project=project,
                items=tuple(NewItemSpec(asset_id=uuid4()) for _ in range(item_count)),
                expected_return=expected_return,
                purpose="Site mobilization",
            ),
            maker or clerk,
        )
        if status is BorrowingStatus.CANCELED:
            return workflow_engine.apply_transition(
                snapshot.batch_id,
                WorkflowAction.CANCEL,
                asset_director,
                TransitionPayload(reason="No longer needed"),
            )
        for reached, action, actor in steps:
            if snapshot.status is status:
                break
            snapshot = workflow_engine.apply_transition(snapshot.batch_id, action, actor)
            assert snapshot.status is reached
        return snapshot

    return _make
