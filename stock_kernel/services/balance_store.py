"""
BalanceStore -- the only writer of stock and lot balance rows.

Responsibility:
    Applies signed quantity changes to ``stock_balances`` and
    ``lot_balances``.  Called exclusively by the PostingEngine, so balances
    change only as a side effect of a document transitioning to POSTED.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Non-negativity: a decrement is one conditional statement
      ``UPDATE ... SET qty = qty - :q WHERE <key> AND qty >= :q``.  Zero
      affected rows means the balance was short (or absent), and
      InsufficientStockError is raised with the available quantity.
      There is no read-check-write window for a concurrent poster to slip
      through: the row lock taken by the UPDATE serializes same-key
      mutations.
    - Lazy creation: an increment on a missing key inserts the row inside
      a SAVEPOINT.  If a concurrent transaction inserted it first, the
      unique constraint fires, the savepoint is rolled back and the
      UPDATE is retried.
    - Balance rows are never deleted here.

Failure modes:
    - InsufficientStockError on a short decrement.  The caller's posting
      savepoint is rolled back, so no earlier line of the document
      survives either.
"""

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from stock_kernel.db.types import ZERO, quantize
from stock_kernel.domain.dtos import BalanceKey
from stock_kernel.exceptions import InsufficientStockError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.balance import LotBalance, StockBalance
from stock_kernel.services.base import BaseService

logger = get_logger("services.balance_store")


class BalanceStore(BaseService):
    """
    Conditional-update balance mutations.

    Contract:
        All ``qty`` arguments are positive Decimals; direction is chosen by
        calling increment_* or decrement_*.

    Guarantees:
        - A successful decrement never leaves a balance below zero.
        - A failed decrement changes nothing.

    Non-goals:
        - Does NOT validate documents or statuses; the PostingEngine does.
    """

    # -------------------------------------------------------------------------
    # Stock balances
    # -------------------------------------------------------------------------

    def increment_stock(self, key: BalanceKey, qty: Decimal) -> None:
        self._increment(
            StockBalance,
            self._stock_conditions(key),
            {
                "product_id": key.product_id,
                "variant_id": key.variant_id,
                "location_id": key.location_id,
            },
            qty,
        )
        logger.debug(
            "balance_incremented",
            extra={
                "product_id": str(key.product_id),
                "variant_id": str(key.variant_id) if key.variant_id else None,
                "location_id": str(key.location_id),
                "qty": qty,
            },
        )

    def decrement_stock(self, key: BalanceKey, qty: Decimal, item_label: str) -> None:
        """
        Decrement the stock balance for ``key`` by ``qty``.

        Raises:
            InsufficientStockError: Balance absent or below ``qty``.
        """
        self._decrement(
            StockBalance,
            self._stock_conditions(key),
            qty,
            item_label,
            key.location_id,
        )
        logger.debug(
            "balance_decremented",
            extra={
                "product_id": str(key.product_id),
                "variant_id": str(key.variant_id) if key.variant_id else None,
                "location_id": str(key.location_id),
                "qty": qty,
            },
        )

    # -------------------------------------------------------------------------
    # Lot balances
    # -------------------------------------------------------------------------

    def increment_lot(self, lot_id: UUID, location_id: UUID, qty: Decimal) -> None:
        self._increment(
            LotBalance,
            self._lot_conditions(lot_id, location_id),
            {"lot_id": lot_id, "location_id": location_id},
            qty,
        )
        logger.debug(
            "lot_balance_incremented",
            extra={"lot_id": str(lot_id), "location_id": str(location_id), "qty": qty},
        )

    def decrement_lot(
        self,
        lot_id: UUID,
        location_id: UUID,
        qty: Decimal,
        lot_label: str,
    ) -> None:
        """
        Raises:
            InsufficientStockError: Lot balance absent or below ``qty``.
        """
        self._decrement(
            LotBalance,
            self._lot_conditions(lot_id, location_id),
            qty,
            lot_label,
            location_id,
        )
        logger.debug(
            "lot_balance_decremented",
            extra={"lot_id": str(lot_id), "location_id": str(location_id), "qty": qty},
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _stock_conditions(key: BalanceKey) -> list[Any]:
        conditions = [
            StockBalance.product_id == key.product_id,
            StockBalance.location_id == key.location_id,
        ]
        if key.variant_id is None:
            conditions.append(StockBalance.variant_id.is_(None))
        else:
            conditions.append(StockBalance.variant_id == key.variant_id)
        return conditions

    @staticmethod
    def _lot_conditions(lot_id: UUID, location_id: UUID) -> list[Any]:
        return [LotBalance.lot_id == lot_id, LotBalance.location_id == location_id]

    def _update_qty(self, model: type, conditions: list[Any], new_qty_expr: Any) -> int:
        result = self.session.execute(
            update(model)
            .where(*conditions)
            .values(qty_on_hand=new_qty_expr)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def _increment(
        self,
        model: type,
        conditions: list[Any],
        key_values: dict[str, Any],
        qty: Decimal,
    ) -> None:
        assert qty > ZERO, "increment qty must be positive"

        if self._update_qty(model, conditions, model.qty_on_hand + qty):
            return

        savepoint = self.session.begin_nested()
        try:
            self.session.execute(insert(model).values(**key_values, qty_on_hand=qty))
            savepoint.commit()
            return
        except IntegrityError:
            # Another transaction created the row first.
            savepoint.rollback()
            logger.debug(
                "balance_insert_race_retry",
                extra={"table": model.__tablename__},
            )

        if not self._update_qty(model, conditions, model.qty_on_hand + qty):
            raise RuntimeError(
                f"{model.__tablename__} row vanished after insert race for {key_values}"
            )

    def _decrement(
        self,
        model: type,
        conditions: list[Any],
        qty: Decimal,
        label: str,
        location_id: UUID,
    ) -> None:
        assert qty > ZERO, "decrement qty must be positive"

        if self._update_qty(
            model,
            [*conditions, model.qty_on_hand >= qty],
            model.qty_on_hand - qty,
        ):
            return

        available = self.session.execute(
            select(model.qty_on_hand).where(*conditions)
        ).scalar_one_or_none()
        available = quantize(available) if available is not None else ZERO

        logger.warning(
            "insufficient_stock",
            extra={
                "table": model.__tablename__,
                "item_label": label,
                "location_id": str(location_id),
                "available": available,
                "requested": qty,
            },
        )
        raise InsufficientStockError(label, str(location_id), available, qty)
