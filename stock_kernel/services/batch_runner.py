"""
BatchRunner -- SAVEPOINT-per-id bulk transitions.

Contract:
    Applies one action (approve, reject, post, cancel) to a bounded list
    of movement ids.  A failure on one id is recorded in its result and
    never aborts the others.

Architecture:
    stock_kernel/services.  Reuses MovementService and PostingEngine, so
    every id is re-validated exactly as a single-document call would be.

Invariants enforced:
    - SAVEPOINT isolation per id: a failing id leaves no partial effect.
    - Results are returned in input order.
    - The list length is bounded (1..max_batch_size).
"""

from collections.abc import Sequence
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import BatchItemResult, BatchResult
from stock_kernel.exceptions import StockKernelError, ValidationError
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.movement import MovementDocument
from stock_kernel.services.base import BaseService
from stock_kernel.services.movement_service import MovementService
from stock_kernel.services.posting_engine import PostingEngine

logger = get_logger("services.batch")

DEFAULT_MAX_BATCH_SIZE = 50
UNKNOWN_DOC_NUMBER = "-"


class BatchAction(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    POST = "POST"
    CANCEL = "CANCEL"


class BatchRunner(BaseService):
    """Batch execution with SAVEPOINT-per-id isolation.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT catch database errors; those abort the whole batch and
          surface to the operation boundary as InfrastructureError.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        movement_service: MovementService | None = None,
        posting_engine: PostingEngine | None = None,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    ):
        super().__init__(session, clock)
        self.movements = movement_service or MovementService(session, self.clock)
        self.posting = posting_engine or PostingEngine(
            session, self.clock, movement_service=self.movements
        )
        self.max_batch_size = max_batch_size

    def run(
        self,
        movement_ids: Sequence[UUID],
        action: BatchAction,
        actor_id: UUID,
        reason: str | None = None,
    ) -> BatchResult:
        """
        Apply ``action`` to each id in its own SAVEPOINT.

        Raises:
            ValidationError: Empty list or more than max_batch_size ids.
        """
        if not movement_ids:
            raise ValidationError("Select at least one document", field="ids")
        if len(movement_ids) > self.max_batch_size:
            raise ValidationError(
                f"At most {self.max_batch_size} documents per batch, got {len(movement_ids)}",
                field="ids",
            )

        batch_id = uuid4()
        results: list[BatchItemResult] = []

        with LogContext.bind(batch_id=str(batch_id)):
            logger.info(
                "batch_started",
                extra={"action": action.value, "total": len(movement_ids)},
            )

            for movement_id in movement_ids:
                savepoint = self.session.begin_nested()
                try:
                    doc_number = self._apply(action, movement_id, actor_id, reason)
                    savepoint.commit()
                    results.append(BatchItemResult(id=movement_id, doc_number=doc_number, success=True))
                except StockKernelError as exc:
                    savepoint.rollback()
                    doc_number = self._doc_number_of(movement_id)
                    results.append(
                        BatchItemResult(
                            id=movement_id,
                            doc_number=doc_number,
                            success=False,
                            error=str(exc),
                            error_code=exc.code,
                        )
                    )
                    logger.warning(
                        "batch_item_failed",
                        extra={
                            "action": action.value,
                            "item_id": str(movement_id),
                            "item_doc_number": doc_number,
                            "error_code": exc.code,
                            "error": str(exc),
                        },
                    )

            succeeded = sum(1 for r in results if r.success)
            result = BatchResult(
                total=len(results),
                succeeded=succeeded,
                failed=len(results) - succeeded,
                results=tuple(results),
            )
            logger.info(
                "batch_completed",
                extra={
                    "action": action.value,
                    "total": result.total,
                    "succeeded": result.succeeded,
                    "failed": result.failed,
                },
            )
        return result

    def _apply(
        self,
        action: BatchAction,
        movement_id: UUID,
        actor_id: UUID,
        reason: str | None,
    ) -> str:
        if action is BatchAction.APPROVE:
            return self.movements.approve(movement_id, actor_id).doc_number
        if action is BatchAction.REJECT:
            return self.movements.reject(movement_id, actor_id, reason).doc_number
        if action is BatchAction.POST:
            return self.posting.post(movement_id, actor_id).doc_number
        if action is BatchAction.CANCEL:
            return self.movements.cancel(movement_id, actor_id, reason).doc_number
        raise ValidationError(f"Unsupported batch action: {action}", field="action")

    def _doc_number_of(self, movement_id: UUID) -> str:
        doc = self.session.get(MovementDocument, movement_id)
        return doc.doc_number if doc is not None else UNKNOWN_DOC_NUMBER
