"""Database layer - engine, base classes, types, and immutability listeners."""

from borrowing_kernel.db.base import UUID, Base, TrackedBase, UTCDateTime, UUIDString
from borrowing_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    session_scope,
)

__all__ = [
    "get_engine",
    "get_session",
    "init_engine_from_url",
    "session_scope",
    "create_tables",
    "drop_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UTCDateTime",
    "UUID",
]
