"""
ReturnService -- partial or full RETURN documents against a posted ISSUE.

Responsibility:
    Turns a list of (issue line, qty) requests into a DRAFT RETURN that puts
    the goods back where they were issued from, with the lot and unit cost
    of the original line.

Architecture position:
    Kernel > Services -- imperative shell.
    Creates the document through MovementService.

Invariants enforced:
    - Cumulative bound: for every ISSUE line, the qty claimed by active
      RETURN documents (any status but CANCELLED/REJECTED) plus the new
      request never exceeds the issued qty.  The ISSUE row is locked
      FOR UPDATE while the claimed totals are summed, so concurrent
      requests against the same ISSUE are checked one after another.
      MovementService repeats the check when the RETURN is edited or
      resubmitted.
    - Requests naming the same line twice are summed before checking.

Failure modes:
    - ValidationError: empty request, not an ISSUE, foreign line id,
      qty <= 0, qty above issued or above what is still returnable.
    - StateConflictError: the ISSUE is not POSTED.
"""

from collections.abc import Sequence
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from stock_kernel.db.types import ZERO, quantize, to_quantity
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import LineInput, MovementInput, ReturnLineRequest
from stock_kernel.domain.movement import (
    DocStatus,
    DocumentLink,
    LinkKind,
    MovementType,
)
from stock_kernel.exceptions import StateConflictError, ValidationError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.movement import MovementDocument, MovementLine
from stock_kernel.services.base import BaseService
from stock_kernel.services.movement_service import MovementService

logger = get_logger("services.return")

RETURN_REASON = "Return from issue"


class ReturnService(BaseService):
    """
    Creates RETURN documents from posted ISSUE documents.

    Contract:
        ``create_return(issue_id, requests, actor_id)`` returns a DRAFT
        RETURN linked (RETURN_FROM, issue_id), one line per request in
        request order.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        movement_service: MovementService | None = None,
    ):
        super().__init__(session, clock)
        self.movements = movement_service or MovementService(session, self.clock)

    def create_return(
        self,
        issue_id: UUID,
        requests: Sequence[ReturnLineRequest],
        actor_id: UUID,
        note: str | None = None,
    ) -> MovementDocument:
        """
        Raises:
            MovementNotFoundError: Unknown issue id.
            ValidationError: See module docstring.
            StateConflictError: ISSUE is not POSTED.
        """
        if not requests:
            raise ValidationError("Select at least one line to return", field="lines")

        issue = self.movements.lock(issue_id)

        if issue.type != MovementType.ISSUE:
            raise ValidationError(
                f"Returns can only be created from ISSUE documents, "
                f"{issue.doc_number} is {issue.type.value}",
                field="issue_id",
            )
        if issue.status != DocStatus.POSTED:
            raise StateConflictError(
                issue.doc_number,
                issue.status.value,
                "return",
                "only POSTED issues can be returned",
            )

        issue_lines = {line.id: line for line in issue.lines}
        requested: dict[UUID, Decimal] = {}
        parsed: list[tuple[MovementLine, Decimal]] = []

        for index, request in enumerate(requests):
            field = f"lines[{index}]"
            line = issue_lines.get(request.line_id)
            if line is None:
                raise ValidationError(
                    f"Line {request.line_id} does not belong to {issue.doc_number}",
                    field=f"{field}.line_id",
                )
            try:
                qty = to_quantity(request.qty)
            except (TypeError, ValueError) as exc:
                raise ValidationError(str(exc), field=f"{field}.qty") from exc
            if qty <= ZERO:
                raise ValidationError("Return qty must be greater than 0", field=f"{field}.qty")

            issued = quantize(line.qty)
            if qty > issued:
                raise ValidationError(
                    f"Return qty {qty} exceeds issued qty {issued} on line {line.line_no}",
                    field=f"{field}.qty",
                )
            requested[line.id] = requested.get(line.id, ZERO) + qty
            parsed.append((line, qty))

        self.movements.check_return_bound(issue, requested)

        lines = tuple(
            LineInput(
                product_id=line.product_id,
                variant_id=line.variant_id,
                to_location_id=line.from_location_id,
                qty=qty,
                unit_cost=line.unit_cost,
                note=f"Returned from line {line.line_no}",
                order_ref=line.order_ref,
                lot_id=line.lot_id,
                source_line_id=line.id,
            )
            for line, qty in parsed
        )

        doc = self.movements.create(
            MovementInput(
                type=MovementType.RETURN,
                lines=lines,
                note=note or f"Return from {issue.doc_number}",
                reason=RETURN_REASON,
                project_code=issue.project_code,
                link=DocumentLink(LinkKind.RETURN_FROM, issue.id),
            ),
            actor_id,
            generated=True,
        )

        logger.info(
            "return_created",
            extra={
                "issue_id": str(issue.id),
                "issue_doc_number": issue.doc_number,
                "return_id": str(doc.id),
                "return_doc_number": doc.doc_number,
                "line_count": len(lines),
            },
        )
        return doc
