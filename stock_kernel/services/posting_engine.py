"""
PostingEngine -- the APPROVED -> POSTED transition.

Responsibility:
    Applies every line of an APPROVED document to the stock and lot
    balances and marks the document POSTED, as one atomic unit.

Architecture position:
    Kernel > Services -- imperative shell.
    Sole caller of BalanceStore.  BatchRunner and the operation boundary
    reach balances only through here.

Invariants enforced:
    - Balances change only as a synchronous side effect of a transition
      into POSTED.
    - No double posting: the document is re-read with SELECT ... FOR UPDATE
      inside the posting savepoint and its status re-checked, so a second
      poster (concurrent or sequential) sees POSTED and fails with
      StateConflictError.
    - All-or-nothing: lines are applied in line_no order inside a
      SAVEPOINT; the first failing line rolls the savepoint back, leaving
      the document APPROVED and every balance as it was.
    - posted_at is set exactly once, from the injected clock.

Failure modes:
    - InsufficientStockError from any decrement.
    - StateConflictError if the document is not APPROVED.
    - OperationalError (statement timeout, PostgreSQL) -- mapped to
      InfrastructureError by the operation boundary.
"""

import time
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from stock_kernel.db.types import ZERO, quantize
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import BalanceKey, PostingResult
from stock_kernel.domain.movement import balance_deltas
from stock_kernel.domain.ports import CatalogReader
from stock_kernel.exceptions import ValidationError
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.balance import Lot
from stock_kernel.models.movement import MovementDocument, MovementLine
from stock_kernel.services.balance_store import BalanceStore
from stock_kernel.services.base import BaseService
from stock_kernel.services.movement_service import MovementService

logger = get_logger("services.posting")

DEFAULT_POSTING_TIMEOUT_SECONDS = 30


class PostingEngine(BaseService):
    """
    Posts APPROVED movement documents.

    Contract:
        ``post(movement_id, actor_id)`` either returns a PostingResult with
        the document POSTED and all balances updated, or raises with
        nothing changed.

    Guarantees:
        - Effect per type comes from the exhaustive POSTING_EFFECTS table.
        - Every lot line moves the lot balance in lockstep with the stock
          balance.

    Non-goals:
        - Does NOT commit.  The posting savepoint is released into the
          caller's transaction.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        catalog: CatalogReader | None = None,
        balance_store: BalanceStore | None = None,
        movement_service: MovementService | None = None,
        timeout_seconds: int = DEFAULT_POSTING_TIMEOUT_SECONDS,
    ):
        super().__init__(session, clock)
        self.catalog = catalog
        self.balances = balance_store or BalanceStore(session, self.clock)
        self.movements = movement_service or MovementService(
            session, self.clock, catalog=catalog
        )
        self.timeout_seconds = timeout_seconds

    def post(self, movement_id: UUID, actor_id: UUID) -> PostingResult:
        """
        Post an APPROVED document.

        Preconditions:
            - The caller is within an active database transaction.

        Postconditions:
            - On success: status POSTED, posted_at set, every line applied.
            - On failure: document and balances exactly as before the call.

        Raises:
            MovementNotFoundError: Unknown id.
            StateConflictError: Document is not APPROVED.
            InsufficientStockError: A decrement would go below zero.
        """
        start = time.monotonic()

        savepoint = self.session.begin_nested()
        try:
            self._apply_statement_timeout()
            doc = self.movements.lock(movement_id)
            with LogContext.bind(movement_id=str(doc.id), doc_number=doc.doc_number):
                transition = self.movements.check_transition(doc, "post")

                for line in doc.lines:
                    self._apply_line(doc, line)

                posted_at = self.clock.now()
                doc.status = transition.to_state
                doc.posted_at = posted_at
                doc.updated_by_id = actor_id
                self.session.flush()
            savepoint.commit()
        except Exception:
            savepoint.rollback()
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "movement_posted",
            extra={
                "movement_id": str(doc.id),
                "doc_number": doc.doc_number,
                "movement_type": doc.type.value,
                "lines_applied": len(doc.lines),
                "duration_ms": duration_ms,
            },
        )

        return PostingResult(
            movement_id=doc.id,
            doc_number=doc.doc_number,
            movement_type=doc.type,
            posted_at=posted_at,
            lines_applied=len(doc.lines),
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _apply_statement_timeout(self) -> None:
        bind = self.session.get_bind()
        if bind.dialect.name != "postgresql" or not self.timeout_seconds:
            return
        timeout_ms = int(self.timeout_seconds * 1000)
        self.session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))

    def _apply_line(self, doc: MovementDocument, line: MovementLine) -> None:
        qty = quantize(line.qty)
        deltas = balance_deltas(doc.type, qty, line.from_location_id, line.to_location_id)
        lot_id = line.lot_id

        for delta in deltas:
            if delta.location_id is None:
                raise ValidationError(
                    f"Line {line.line_no} of {doc.doc_number} has no location for "
                    f"its {doc.type.value} effect",
                    field=f"lines[{line.line_no - 1}]",
                )
            key = BalanceKey(line.product_id, line.variant_id, delta.location_id)

            if delta.qty > ZERO:
                self.balances.increment_stock(key, delta.qty)
                if lot_id is not None:
                    self.balances.increment_lot(lot_id, delta.location_id, delta.qty)
            elif delta.qty < ZERO:
                magnitude = -delta.qty
                self.balances.decrement_stock(key, magnitude, self._item_label(line))
                if lot_id is not None:
                    self.balances.decrement_lot(
                        lot_id,
                        delta.location_id,
                        magnitude,
                        self._lot_label(line, lot_id),
                    )

        logger.debug(
            "line_applied",
            extra={
                "line_no": line.line_no,
                "product_id": str(line.product_id),
                "qty": qty,
                "delta_count": len(deltas),
                "lot_id": str(lot_id) if lot_id else None,
            },
        )

    def _item_label(self, line: MovementLine) -> str:
        if self.catalog is not None:
            return self.catalog.product_label(line.product_id, line.variant_id)
        if line.variant_id is not None:
            return f"{line.product_id} ({line.variant_id})"
        return str(line.product_id)

    def _lot_label(self, line: MovementLine, lot_id: UUID) -> str:
        lot = self.session.get(Lot, lot_id)
        lot_number = lot.lot_number if lot is not None else str(lot_id)
        return f"{self._item_label(line)} lot {lot_number}"

