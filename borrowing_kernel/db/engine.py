"""
Module: borrowing_kernel.db.engine
Responsibility: Owns the process-wide SQLAlchemy engine and the session
    factory every service opens its sessions from, plus ``session_scope``
    for callers that want commit-or-rollback around a block.
Architecture position: Kernel > DB.  May import from db/base.py.  MUST NOT
    import from services/, selectors/, domain/, or outer layers (except for
    create_tables which imports the models so their tables are registered).

Backends:
    - PostgreSQL (production): READ COMMITTED, QueuePool with pre-ping.
      Batch rows are locked with SELECT ... FOR UPDATE by the engine.
    - SQLite (tests, single-process use): every transaction starts with
      BEGIN IMMEDIATE and foreign keys are switched on.  FOR UPDATE is a
      no-op there, so same-batch ordering comes from services/locking.py.

Failure modes:
    - RuntimeError from any accessor when no engine has been initialized.
"""

import atexit
from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from borrowing_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_NOT_INITIALIZED = "No database engine; call init_engine_from_url() first."

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


# ---------------------------------------------------------------------------
# SQLite connection hooks
# ---------------------------------------------------------------------------


def _on_sqlite_connect(dbapi_connection: Any, connection_record: Any) -> None:
    # pysqlite must not issue its own BEGIN, otherwise SAVEPOINT breaks.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def _on_sqlite_begin(conn: Any) -> None:
    # Take the write lock at BEGIN; two deferred writers can deadlock on upgrade.
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def _sqlite_engine(database_url: str, echo: bool, busy_timeout: int) -> Engine:
    engine = create_engine(
        database_url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": busy_timeout},
    )
    event.listen(engine, "connect", _on_sqlite_connect)
    event.listen(engine, "begin", _on_sqlite_begin)
    return engine


def _server_engine(database_url: str, echo: bool, **pool: Any) -> Engine:
    return create_engine(
        database_url,
        echo=echo,
        poolclass=QueuePool,
        isolation_level="READ COMMITTED",
        **pool,
    )


# ---------------------------------------------------------------------------
# Initialization and access
# ---------------------------------------------------------------------------


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Create the engine for *database_url* and make it the process default.

    Calling it again replaces the previous engine (tests do this per case).
    For SQLite ``pool_timeout`` doubles as the busy timeout a writer waits
    for the database lock; the other pool settings apply to server
    databases only.
    """
    global _engine, _SessionFactory

    if database_url.startswith("sqlite"):
        engine = _sqlite_engine(database_url, echo, pool_timeout)
    else:
        engine = _server_engine(
            database_url,
            echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
        )

    _engine = engine
    _SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)

    configure_logging()
    is_sqlite = engine.dialect.name == "sqlite"
    logger.info(
        "database_engine_ready",
        extra={
            "dialect": engine.dialect.name,
            "pool_size": None if is_sqlite else pool_size,
            "echo": echo,
        },
    )
    return engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """
    The factory services open their sessions from.

    Each engine call opens its own session, so threads never share one.
    """
    if _SessionFactory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _SessionFactory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope(
    factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """
    Commit the block's work on success, roll it back on any exception.

    The session is closed either way and the exception propagates::

        with session_scope() as session:
            session.add(batch)
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.debug("session_scope_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Schema and teardown
# ---------------------------------------------------------------------------


def create_tables() -> None:
    """Create every borrowing table on the current engine."""
    from borrowing_kernel.db.base import Base
    import borrowing_kernel.models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(get_engine())


def drop_tables() -> None:
    from borrowing_kernel.db.base import Base
    import borrowing_kernel.models  # noqa: F401

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the current engine and forget the session factory."""
    global _engine, _SessionFactory

    _dispose()
    _engine = None
    _SessionFactory = None


def _dispose() -> None:
    if _engine is not None:
        _engine.dispose()


atexit.register(_dispose)
