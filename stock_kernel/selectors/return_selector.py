"""
ReturnSelector -- how much of each ISSUE line is returned, pending or left.

``returned`` sums lines of POSTED RETURN documents; ``pending`` sums
DRAFT/SUBMITTED/APPROVED ones.  CANCELLED and REJECTED returns claim
nothing.  MovementService uses ``claimed_by_line`` under a lock on the ISSUE
row to enforce the cumulative bound.
"""

from collections import defaultdict
from collections.abc import Sequence
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from stock_kernel.db.types import ZERO, quantize
from stock_kernel.domain.dtos import IssueWithRemaining, ReturnableLine
from stock_kernel.domain.movement import (
    INACTIVE_STATUSES,
    DocStatus,
    LinkKind,
    MovementType,
)
from stock_kernel.exceptions import MovementNotFoundError
from stock_kernel.models.movement import MovementDocument, MovementLine
from stock_kernel.selectors.base import BaseSelector


class ReturnSelector(BaseSelector):
    """Read-side view of RETURN documents claimed against ISSUE lines."""

    def claimed_by_line(
        self,
        issue_id: UUID,
        statuses: Sequence[DocStatus] | None = None,
        exclude_movement_id: UUID | None = None,
    ) -> dict[UUID, Decimal]:
        """
        Qty claimed per ISSUE line by RETURN documents linked to ``issue_id``.

        With ``statuses`` None every active status counts.  Lines of
        ``exclude_movement_id`` are left out, so a RETURN being edited or
        resubmitted does not count against itself.
        """
        claims = self._claims(
            issue_ids=[issue_id],
            statuses=statuses,
            exclude_movement_id=exclude_movement_id,
        )
        return self._sum_by_line(claims)

    def returnable_lines(self, issue_id: UUID) -> tuple[ReturnableLine, ...]:
        """
        Raises:
            MovementNotFoundError: Unknown issue id.
        """
        issue = self.session.get(MovementDocument, issue_id)
        if issue is None:
            raise MovementNotFoundError(str(issue_id))
        claims = self._claims(issue_ids=[issue_id])
        return self._returnable(issue, claims)

    def issues_with_remaining(self) -> tuple[IssueWithRemaining, ...]:
        """POSTED ISSUE documents with some quantity still returnable, newest first."""
        issues = self.session.execute(
            select(MovementDocument)
            .where(
                MovementDocument.type == MovementType.ISSUE,
                MovementDocument.status == DocStatus.POSTED,
            )
            .order_by(MovementDocument.posted_at.desc(), MovementDocument.doc_number.desc())
        ).scalars().all()
        if not issues:
            return ()

        claims = self._claims(issue_ids=[issue.id for issue in issues])
        result = []
        for issue in issues:
            lines = self._returnable(issue, claims)
            if any(line.remaining > ZERO for line in lines):
                result.append(
                    IssueWithRemaining(
                        movement_id=issue.id,
                        doc_number=issue.doc_number,
                        posted_at=issue.posted_at,
                        lines=lines,
                    )
                )
        return tuple(result)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _claims(
        self,
        issue_ids: Sequence[UUID],
        statuses: Sequence[DocStatus] | None = None,
        exclude_movement_id: UUID | None = None,
    ) -> dict[tuple[UUID, DocStatus], Decimal]:
        """Sum of RETURN line qty keyed by (source_line_id, return status)."""
        status_filter = (
            MovementDocument.status.in_(list(statuses))
            if statuses is not None
            else MovementDocument.status.not_in(list(INACTIVE_STATUSES))
        )
        query = (
            select(
                MovementLine.source_line_id,
                MovementDocument.status,
                func.sum(MovementLine.qty),
            )
            .join(MovementDocument, MovementLine.movement_id == MovementDocument.id)
            .where(
                MovementDocument.type == MovementType.RETURN,
                MovementDocument.link_kind == LinkKind.RETURN_FROM,
                MovementDocument.link_target_id.in_(list(issue_ids)),
                MovementLine.source_line_id.is_not(None),
                status_filter,
            )
            .group_by(MovementLine.source_line_id, MovementDocument.status)
        )
        if exclude_movement_id is not None:
            query = query.where(MovementDocument.id != exclude_movement_id)
        rows = self.session.execute(query).all()
        return {
            (line_id, status): quantize(Decimal(total))
            for line_id, status, total in rows
            if total is not None
        }

    @staticmethod
    def _sum_by_line(claims: dict[tuple[UUID, DocStatus], Decimal]) -> dict[UUID, Decimal]:
        totals: dict[UUID, Decimal] = defaultdict(lambda: ZERO)
        for (line_id, _status), qty in claims.items():
            totals[line_id] += qty
        return dict(totals)

    @staticmethod
    def _returnable(
        issue: MovementDocument,
        claims: dict[tuple[UUID, DocStatus], Decimal],
    ) -> tuple[ReturnableLine, ...]:
        lines = []
        for line in issue.lines:
            returned = ZERO
            pending = ZERO
            for (line_id, status), qty in claims.items():
                if line_id != line.id:
                    continue
                if status == DocStatus.POSTED:
                    returned += qty
                else:
                    pending += qty
            lines.append(
                ReturnableLine(
                    line_id=line.id,
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    from_location_id=line.from_location_id,
                    lot_id=line.lot_id,
                    issued=quantize(line.qty),
                    returned=returned,
                    pending=pending,
                )
            )
        return tuple(lines)
