"""
ReversalService -- derives a DRAFT document undoing a POSTED one.

Responsibility:
    Builds the mirror image of a posted document: reverse type from
    REVERSE_TYPES, locations moved to the roles the reverse type needs,
    ADJUST quantities negated, lots copied.  The result goes through the
    normal lifecycle; balances move only when it is posted.

Architecture position:
    Kernel > Services -- imperative shell.
    Creates the document through MovementService so numbering and line
    validation are shared.

Invariants enforced:
    - Only POSTED documents can be reversed.
    - At most one active reversal per document.  "Active" means any status
      but CANCELLED/REJECTED.  The original row is locked FOR UPDATE while
      checking, so two concurrent requests cannot both pass.  Resubmitting
      a rejected reversal re-runs the check in MovementService.submit.
    - The original document is never mutated.

Failure modes:
    - StateConflictError: original not POSTED.
    - DuplicateOperationError: an active reversal already exists.
"""

from uuid import UUID

from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import LineInput, MovementInput
from stock_kernel.domain.movement import (
    REVERSE_TYPES,
    DocStatus,
    DocumentLink,
    LinkKind,
    reverse_line,
)
from stock_kernel.exceptions import DuplicateOperationError, StateConflictError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.movement import MovementDocument
from stock_kernel.services.base import BaseService
from stock_kernel.services.movement_service import MovementService

logger = get_logger("services.reversal")

REVERSAL_REASON = "Reversal"


class ReversalService(BaseService):
    """
    Creates reversal documents.

    Contract:
        ``create_reversal(movement_id, actor_id)`` returns a new DRAFT
        document linked (REVERSAL, movement_id).

    Non-goals:
        - Does NOT submit, approve or post the reversal.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        movement_service: MovementService | None = None,
    ):
        super().__init__(session, clock)
        self.movements = movement_service or MovementService(session, self.clock)

    def create_reversal(self, movement_id: UUID, actor_id: UUID) -> MovementDocument:
        """
        Raises:
            MovementNotFoundError: Unknown id.
            StateConflictError: Document is not POSTED.
            DuplicateOperationError: An active reversal already exists.
        """
        original = self.movements.lock(movement_id)

        if original.status != DocStatus.POSTED:
            raise StateConflictError(
                original.doc_number,
                original.status.value,
                "reverse",
                "only POSTED documents can be reversed",
            )

        existing = self.movements.active_reversal_of(original.id)
        if existing is not None:
            raise DuplicateOperationError(
                original.doc_number, existing.doc_number, str(existing.id)
            )

        reverse_type = REVERSE_TYPES[original.type]
        lines = []
        for line in original.lines:
            shape = reverse_line(
                original.type,
                line.qty,
                line.from_location_id,
                line.to_location_id,
            )
            lines.append(
                LineInput(
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    from_location_id=shape.from_location_id,
                    to_location_id=shape.to_location_id,
                    qty=shape.qty,
                    unit_cost=line.unit_cost,
                    note=f"Reversal of line {line.line_no}",
                    order_ref=line.order_ref,
                    lot_id=line.lot_id,
                    source_line_id=line.id,
                )
            )

        reversal = self.movements.create(
            MovementInput(
                type=reverse_type,
                lines=tuple(lines),
                note=f"Reversal of {original.doc_number}",
                reason=REVERSAL_REASON,
                project_code=original.project_code,
                link=DocumentLink(LinkKind.REVERSAL, original.id),
            ),
            actor_id,
            generated=True,
        )

        logger.info(
            "reversal_created",
            extra={
                "original_id": str(original.id),
                "original_doc_number": original.doc_number,
                "reversal_id": str(reversal.id),
                "reversal_doc_number": reversal.doc_number,
                "reversal_type": reverse_type.value,
            },
        )
        return reversal

    def active_reversal_of(self, movement_id: UUID) -> MovementDocument | None:
        return self.movements.active_reversal_of(movement_id)
