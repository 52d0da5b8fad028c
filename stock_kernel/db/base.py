"""
Module: stock_kernel.db.base
Responsibility: Declarative base for the ledger tables.  Documents, lines,
    lots, balances and counters all get a UUID primary key and the same
    column types for quantities and timestamps.
Architecture position: Kernel > DB.  ALL model files import from here.  This
    module MUST NOT import from models/, services/, selectors/, domain/, or
    outer layers.

Invariants enforced:
    - Quantities and unit costs map to Numeric(38, 9); NEVER float.
    - Documents and lots (TrackedBase) record who created and last
      edited them.  Balance rows do not; their history is the posted lines.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID stored as String(36) so SQLite and PostgreSQL share one schema."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return UUID(value)
        return None


class Base(DeclarativeBase):
    """Declarative base: uuid4 ``id``, exact decimals, timezone-aware datetimes."""

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        UUID: UUIDString(),
    }

    id: Mapped[UUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Creator and editor columns for movement documents and lots.

    Guarantees:
        - created_at is set by the database on INSERT and never changes.
        - updated_at is refreshed on every UPDATE, including status
          transitions.
        - created_by_id is required; updated_by_id stays NULL until the
          first edit or transition.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    created_by_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    updated_by_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )
