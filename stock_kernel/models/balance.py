"""
Module: stock_kernel.models.balance
Responsibility: ORM persistence for lots and the two materialized balance
    tables (stock per product/variant/location, lot per lot/location).
Architecture position: Kernel > Models.  May import from db/ only.
    MUST NOT import from services/, selectors/, or outer layers.

Invariants enforced:
    - qty_on_hand >= 0 on both balance tables (ck_*_non_negative).  The
      BalanceStore's conditional UPDATE is the primary guard; the CHECK is
      the backstop.
    - One stock row per (product_id, variant_id, location_id).  On
      PostgreSQL NULL variants compare equal (NULLS NOT DISTINCT).
    - One lot row per (product_id, lot_number); one lot balance row per
      (lot_id, location_id).
    - Balance rows are written only by services.balance_store.BalanceStore.

Failure modes:
    - IntegrityError on a concurrent first insert of the same key; the
      BalanceStore retries the update in that case.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, TrackedBase, UUIDString
from stock_kernel.db.types import ZERO


class Lot(TrackedBase):
    """
    A batch of one product, tracked by number and optional expiry.

    Created on the first RECEIVE that names a new lot number.
    ``qty_received`` is informational; lot balances carry the live quantity.
    """

    __tablename__ = "lots"

    __table_args__ = (
        UniqueConstraint("product_id", "lot_number", name="uq_lot_product_number"),
        Index("idx_lot_expiry", "expiry_date"),
    )

    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    variant_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    lot_number: Mapped[str] = mapped_column(String(100), nullable=False)

    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    qty_received: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    def __repr__(self) -> str:
        return f"<Lot {self.lot_number} product={self.product_id}>"


class StockBalance(Base):
    """On-hand quantity for one (product, variant, location)."""

    __tablename__ = "stock_balances"

    __table_args__ = (
        UniqueConstraint(
            "product_id",
            "variant_id",
            "location_id",
            name="uq_stock_balance_key",
            postgresql_nulls_not_distinct=True,
        ),
        CheckConstraint("qty_on_hand >= 0", name="ck_stock_balance_non_negative"),
        Index("idx_stock_balance_location", "location_id"),
    )

    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    variant_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    qty_on_hand: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<StockBalance product={self.product_id} variant={self.variant_id} "
            f"location={self.location_id} qty={self.qty_on_hand}>"
        )


class LotBalance(Base):
    """On-hand quantity for one (lot, location)."""

    __tablename__ = "lot_balances"

    __table_args__ = (
        UniqueConstraint("lot_id", "location_id", name="uq_lot_balance_key"),
        CheckConstraint("qty_on_hand >= 0", name="ck_lot_balance_non_negative"),
    )

    lot_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("lots.id"),
        nullable=False,
    )

    location_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    qty_on_hand: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<LotBalance lot={self.lot_id} location={self.location_id} qty={self.qty_on_hand}>"
