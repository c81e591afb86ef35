"""
Config -> Kernel Bridges.

Functions that turn a BorrowingPolicyConfig into kernel objects.  They live
here (the producer) because the kernel never imports borrowing_config.

Usage:
    from borrowing_config.bridges import init_borrowing_runtime

    engine, batches = init_borrowing_runtime("postgresql://...")

``init_borrowing_runtime`` is the process startup path: it initializes the
database engine, creates the tables, registers the ORM immutability
listeners and builds both services from the active config.  Hosts that
wire the kernel themselves must call ``register_immutability_listeners()``
before the first write, or terminal batches and audit entries can be
edited through the ORM:

    from borrowing_config import get_active_config
    from borrowing_config.bridges import build_batch_service, build_workflow_engine
    from borrowing_kernel.db.immutability import register_immutability_listeners

    register_immutability_listeners()
    config = get_active_config()
    engine = build_workflow_engine(config, session_factory)
    batches = build_batch_service(config, session_factory)
"""

from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from borrowing_config import get_active_config
from borrowing_config.schema import BorrowingPolicyConfig
from borrowing_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from borrowing_kernel.db.immutability import register_immutability_listeners
from borrowing_kernel.domain.authorization import RoleAuthorizationMatrix
from borrowing_kernel.domain.clock import Clock
from borrowing_kernel.services.batch_service import BorrowingBatchService
from borrowing_kernel.services.locking import BatchLockRegistry
from borrowing_kernel.services.workflow_engine import BorrowingWorkflowEngine


def build_authorization_matrix(config: BorrowingPolicyConfig) -> RoleAuthorizationMatrix:
    """Build the role matrix from the config's permissions and overrides."""
    return RoleAuthorizationMatrix(
        {rule.action: rule.roles for rule in config.permissions},
        {(o.action, o.from_status): o.roles for o in config.state_overrides},
    )


def build_workflow_engine(
    config: BorrowingPolicyConfig,
    session_factory: sessionmaker[Session],
    clock: Clock | None = None,
    lock_registry: BatchLockRegistry | None = None,
) -> BorrowingWorkflowEngine:
    return BorrowingWorkflowEngine(
        session_factory,
        matrix=build_authorization_matrix(config),
        clock=clock,
        tz=config.tz,
        lock_registry=lock_registry,
        maker_may_cancel_unverified=config.maker_may_cancel_unverified,
        recent_audit_entries=config.recent_audit_entries,
    )


def build_batch_service(
    config: BorrowingPolicyConfig,
    session_factory: sessionmaker[Session],
    clock: Clock | None = None,
) -> BorrowingBatchService:
    return BorrowingBatchService(
        session_factory,
        matrix=build_authorization_matrix(config),
        clock=clock,
        tz=config.tz,
        reference_prefix=config.reference_prefix,
        default_project_code=config.default_project_code,
        recent_audit_entries=config.recent_audit_entries,
    )


def init_borrowing_runtime(
    database_url: str,
    config: BorrowingPolicyConfig | None = None,
    clock: Clock | None = None,
    create_schema: bool = True,
) -> tuple[BorrowingWorkflowEngine, BorrowingBatchService]:
    """
    Start the borrowing kernel for this process.

    Initializes the engine for *database_url*, creates any missing tables
    (unless *create_schema* is false), registers the immutability
    listeners and returns ``(workflow_engine, batch_service)`` built from
    *config*, or from ``get_active_config()`` when none is given.
    """
    init_engine_from_url(database_url)
    if create_schema:
        create_tables()
    register_immutability_listeners()

    config = config or get_active_config()
    session_factory = get_session_factory()
    return (
        build_workflow_engine(config, session_factory, clock=clock),
        build_batch_service(config, session_factory, clock=clock),
    )
