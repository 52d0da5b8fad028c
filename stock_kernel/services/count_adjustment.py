"""
CountAdjustmentService -- turns a physical stock count into an ADJUST document.

Responsibility:
    Compares counted quantities with the on-hand balances and builds one
    DRAFT ADJUST line per non-zero variance (``counted - on_hand``).  The
    document then travels the normal lifecycle; balances move only when
    the PostingEngine posts it.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - Counted quantities are >= 0.
    - Each balance key appears at most once per count.
    - Lot counts compare against the lot balance; the ADJUST line carries
      the lot, so stock and lot balances move together when posted.
"""

from collections.abc import Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from stock_kernel.db.types import ZERO, to_quantity
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import CountedQuantity, LineInput, MovementInput
from stock_kernel.domain.movement import DocumentLink, MovementType
from stock_kernel.exceptions import ValidationError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.movement import MovementDocument
from stock_kernel.selectors.balance_selector import BalanceSelector
from stock_kernel.services.base import BaseService
from stock_kernel.services.movement_service import MovementService

logger = get_logger("services.count_adjustment")

COUNT_REASON = "Stock count"


class CountAdjustmentService(BaseService):
    """
    Builds variance documents from stock counts.

    Non-goals:
        - Does NOT write balances.  Returning None means nothing to adjust.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        movement_service: MovementService | None = None,
    ):
        super().__init__(session, clock)
        self.movements = movement_service or MovementService(session, self.clock)
        self.balances = BalanceSelector(session)

    def build_adjustment(
        self,
        counts: Sequence[CountedQuantity],
        actor_id: UUID,
        link: DocumentLink | None = None,
        note: str | None = None,
        reason: str = COUNT_REASON,
    ) -> MovementDocument | None:
        """
        Create a DRAFT ADJUST for every counted key whose count differs.

        Returns:
            The new document, or None if every count matched.

        Raises:
            ValidationError: Empty counts, negative or malformed qty,
                duplicate key.
        """
        if not counts:
            raise ValidationError("A stock count needs at least one counted line", field="counts")

        seen: set[tuple] = set()
        lines: list[LineInput] = []

        for index, count in enumerate(counts):
            field = f"counts[{index}]"
            key = (count.product_id, count.variant_id, count.location_id, count.lot_id)
            if key in seen:
                raise ValidationError(
                    f"Product {count.product_id} at location {count.location_id} is counted twice",
                    field=field,
                )
            seen.add(key)

            try:
                counted = to_quantity(count.counted_qty)
            except (TypeError, ValueError) as exc:
                raise ValidationError(str(exc), field=f"{field}.counted_qty") from exc
            if counted < ZERO:
                raise ValidationError("Counted qty cannot be negative", field=f"{field}.counted_qty")

            if count.lot_id is not None:
                on_hand = self.balances.lot_qty(count.lot_id, count.location_id)
            else:
                on_hand = self.balances.stock_qty(
                    count.product_id, count.location_id, count.variant_id
                )

            variance = counted - on_hand
            if variance == ZERO:
                continue

            lines.append(
                LineInput(
                    product_id=count.product_id,
                    variant_id=count.variant_id,
                    to_location_id=count.location_id,
                    qty=variance,
                    lot_id=count.lot_id,
                    note=f"Counted {counted}, on hand {on_hand}",
                )
            )

        if not lines:
            logger.info("stock_count_no_variance", extra={"counted_keys": len(counts)})
            return None

        doc = self.movements.create(
            MovementInput(
                type=MovementType.ADJUST,
                lines=tuple(lines),
                note=note,
                reason=reason,
                link=link,
            ),
            actor_id,
        )
        logger.info(
            "stock_count_adjustment_created",
            extra={
                "movement_id": str(doc.id),
                "doc_number": doc.doc_number,
                "counted_keys": len(counts),
                "variance_lines": len(lines),
            },
        )
        return doc
