"""
BalanceSelector -- read-only access to stock and lot balances.

A missing balance row reads as zero: rows are created lazily on first
increment, so "never stocked" and "stocked then emptied" look the same to
callers.
"""

from collections.abc import Iterable
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, or_, select

from stock_kernel.db.types import ZERO, quantize
from stock_kernel.domain.dtos import BalanceKey, LotBalanceView, StockBalanceView
from stock_kernel.models.balance import LotBalance, StockBalance
from stock_kernel.selectors.base import BaseSelector


def _variant_condition(variant_id: UUID | None):
    if variant_id is None:
        return StockBalance.variant_id.is_(None)
    return StockBalance.variant_id == variant_id


class BalanceSelector(BaseSelector):
    """Queries over stock_balances and lot_balances."""

    _STOCK_COLUMNS = (
        StockBalance.product_id,
        StockBalance.variant_id,
        StockBalance.location_id,
        StockBalance.qty_on_hand,
    )

    def stock_qty(
        self,
        product_id: UUID,
        location_id: UUID,
        variant_id: UUID | None = None,
    ) -> Decimal:
        qty = self.session.execute(
            select(StockBalance.qty_on_hand).where(
                StockBalance.product_id == product_id,
                StockBalance.location_id == location_id,
                _variant_condition(variant_id),
            )
        ).scalar_one_or_none()
        return quantize(qty) if qty is not None else ZERO

    def balances_for_product(
        self,
        product_id: UUID,
        variant_id: UUID | None = None,
        include_all_variants: bool = False,
    ) -> tuple[StockBalanceView, ...]:
        """Balances of one SKU across locations (or every variant of the product)."""
        stmt = select(*self._STOCK_COLUMNS).where(StockBalance.product_id == product_id)
        if not include_all_variants:
            stmt = stmt.where(_variant_condition(variant_id))
        stmt = stmt.order_by(StockBalance.location_id)
        return tuple(self._stock_view(row) for row in self.session.execute(stmt))

    def balances_for_location(
        self,
        location_id: UUID,
        include_zero: bool = False,
    ) -> tuple[StockBalanceView, ...]:
        stmt = select(*self._STOCK_COLUMNS).where(StockBalance.location_id == location_id)
        if not include_zero:
            stmt = stmt.where(StockBalance.qty_on_hand > ZERO)
        stmt = stmt.order_by(StockBalance.product_id)
        return tuple(self._stock_view(row) for row in self.session.execute(stmt))

    def batch_quantities(self, keys: Iterable[BalanceKey]) -> dict[BalanceKey, Decimal]:
        """On-hand qty for many keys in one query; absent keys map to zero."""
        keys = list(dict.fromkeys(keys))
        if not keys:
            return {}
        conditions = [
            and_(
                StockBalance.product_id == key.product_id,
                StockBalance.location_id == key.location_id,
                _variant_condition(key.variant_id),
            )
            for key in keys
        ]
        found = {
            BalanceKey(row.product_id, row.variant_id, row.location_id): quantize(row.qty_on_hand)
            for row in self.session.execute(select(*self._STOCK_COLUMNS).where(or_(*conditions)))
        }
        return {key: found.get(key, ZERO) for key in keys}

    def lot_qty(self, lot_id: UUID, location_id: UUID) -> Decimal:
        qty = self.session.execute(
            select(LotBalance.qty_on_hand).where(
                LotBalance.lot_id == lot_id,
                LotBalance.location_id == location_id,
            )
        ).scalar_one_or_none()
        return quantize(qty) if qty is not None else ZERO

    def lot_balances_for_lot(self, lot_id: UUID) -> tuple[LotBalanceView, ...]:
        rows = self.session.execute(
            select(LotBalance.lot_id, LotBalance.location_id, LotBalance.qty_on_hand)
            .where(LotBalance.lot_id == lot_id)
            .order_by(LotBalance.location_id)
        )
        return tuple(
            LotBalanceView(
                lot_id=row.lot_id,
                location_id=row.location_id,
                qty_on_hand=quantize(row.qty_on_hand),
            )
            for row in rows
        )

    @staticmethod
    def _stock_view(row) -> StockBalanceView:
        return StockBalanceView(
            product_id=row.product_id,
            variant_id=row.variant_id,
            location_id=row.location_id,
            qty_on_hand=quantize(row.qty_on_hand),
        )
