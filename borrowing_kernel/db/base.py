"""
Module: borrowing_kernel.db.base
Responsibility: The declarative Base every borrowing table derives from,
    with its column type conventions, and TrackedBase for rows that record
    who created and last changed them.
Architecture position: Kernel > DB.  Imported by every model module; imports
    nothing from models/, services/, selectors/, domain/, or outer layers.

Conventions:
    - Primary keys are uuid4 values stored as 36-character strings, so the
      same schema works on PostgreSQL and SQLite.
    - ``datetime`` columns always load as aware UTC values.  SQLite keeps
      no offset, so values are written there as naive UTC.
    - ``date`` columns carry day-granularity expected return dates.
"""

from datetime import date, datetime, timezone
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, Date, DateTime, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID bound as its canonical string and loaded back as ``uuid.UUID``."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else PyUUID(value)


class UTCDateTime(TypeDecorator):
    """
    Aware timestamp normalized to UTC.

    Naive values bound from Python are taken to be UTC already.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base: uuid4 ``id`` plus the column type conventions above."""

    type_annotation_map: ClassVar[dict] = {
        datetime: UTCDateTime(),
        date: Date(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Adds who/when columns to a table.

    ``created_by_id`` is mandatory: a borrowing batch always has a maker.
    ``updated_by_id`` is the actor of the latest workflow step.  Services
    set the timestamps from their Clock; the server defaults only cover
    rows written outside a service.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now(), nullable=False,
    )
    created_by_id: Mapped[PyUUID] = mapped_column(UUIDString(), nullable=False)
    updated_by_id: Mapped[PyUUID | None] = mapped_column(UUIDString(), nullable=True)


UUID = PyUUID
