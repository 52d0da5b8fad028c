"""
MovementSelector -- read-only queries over movement documents.

Lookups by id or number, filtered/paginated listing, documents linked to a
given one, and the posted movement history of a product.
"""

from uuid import UUID

from sqlalchemy import func, or_, select

from stock_kernel.domain.dtos import (
    MovementFilter,
    MovementLineView,
    MovementView,
    Page,
    ProductMovementEntry,
)
from stock_kernel.domain.movement import DocStatus
from stock_kernel.models.movement import MovementDocument, MovementLine
from stock_kernel.selectors.base import BaseSelector

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 200


def _page_bounds(page: int, limit: int) -> tuple[int, int]:
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    return page, limit


class MovementSelector(BaseSelector):
    """Queries returning MovementView snapshots."""

    def get(self, movement_id: UUID) -> MovementView | None:
        doc = self.session.get(MovementDocument, movement_id)
        return MovementView.from_model(doc) if doc is not None else None

    def get_by_doc_number(self, doc_number: str) -> MovementView | None:
        doc = self.session.execute(
            select(MovementDocument).where(MovementDocument.doc_number == doc_number)
        ).scalar_one_or_none()
        return MovementView.from_model(doc) if doc is not None else None

    def list(
        self,
        filters: MovementFilter | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[MovementView]:
        """
        Newest first.  ``search`` matches doc number or note
        (case-insensitive); ``order_ref`` matches any line's order reference.
        """
        filters = filters or MovementFilter()
        page, limit = _page_bounds(page, limit)

        conditions = []
        if filters.type is not None:
            conditions.append(MovementDocument.type == filters.type)
        if filters.status is not None:
            conditions.append(MovementDocument.status == filters.status)
        if filters.search:
            pattern = f"%{filters.search.strip()}%"
            conditions.append(
                or_(
                    MovementDocument.doc_number.ilike(pattern),
                    MovementDocument.note.ilike(pattern),
                )
            )
        if filters.created_from is not None:
            conditions.append(MovementDocument.created_at >= filters.created_from)
        if filters.created_to is not None:
            conditions.append(MovementDocument.created_at <= filters.created_to)
        if filters.order_ref:
            conditions.append(
                MovementDocument.id.in_(
                    select(MovementLine.movement_id).where(
                        MovementLine.order_ref.ilike(f"%{filters.order_ref.strip()}%")
                    )
                )
            )

        total = self.session.execute(
            select(func.count()).select_from(MovementDocument).where(*conditions)
        ).scalar_one()

        docs = self.session.execute(
            select(MovementDocument)
            .where(*conditions)
            .order_by(MovementDocument.created_at.desc(), MovementDocument.doc_number.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()

        return Page(
            items=tuple(MovementView.from_model(doc) for doc in docs),
            total=total,
            page=page,
            limit=limit,
        )

    def linked_movements(self, movement_id: UUID) -> tuple[MovementView, ...]:
        """
        Documents whose link targets ``movement_id`` (CANCELLED excluded),
        followed by the document ``movement_id`` itself links to, if any.
        """
        children = self.session.execute(
            select(MovementDocument)
            .where(
                MovementDocument.link_target_id == movement_id,
                MovementDocument.status != DocStatus.CANCELLED,
            )
            .order_by(MovementDocument.created_at, MovementDocument.doc_number)
        ).scalars().all()

        result = [MovementView.from_model(doc, include_lines=False) for doc in children]

        doc = self.session.get(MovementDocument, movement_id)
        if doc is not None and doc.link_target_id is not None:
            origin = self.session.get(MovementDocument, doc.link_target_id)
            if origin is not None:
                result.append(MovementView.from_model(origin, include_lines=False))

        return tuple(result)

    def posted_lines_for_product(
        self,
        product_id: UUID,
        variant_id: UUID | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[ProductMovementEntry]:
        """Posted lines moving ``product_id`` (optionally one variant), newest first."""
        page, limit = _page_bounds(page, limit)

        conditions = [
            MovementLine.product_id == product_id,
            MovementDocument.status == DocStatus.POSTED,
        ]
        if variant_id is not None:
            conditions.append(MovementLine.variant_id == variant_id)

        total = self.session.execute(
            select(func.count())
            .select_from(MovementLine)
            .join(MovementDocument, MovementLine.movement_id == MovementDocument.id)
            .where(*conditions)
        ).scalar_one()

        rows = self.session.execute(
            select(MovementLine, MovementDocument)
            .join(MovementDocument, MovementLine.movement_id == MovementDocument.id)
            .where(*conditions)
            .order_by(
                MovementDocument.posted_at.desc(),
                MovementDocument.doc_number.desc(),
                MovementLine.line_no,
            )
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()

        return Page(
            items=tuple(
                ProductMovementEntry(
                    movement_id=doc.id,
                    doc_number=doc.doc_number,
                    movement_type=doc.type,
                    posted_at=doc.posted_at,
                    line=MovementLineView.from_model(line),
                )
                for line, doc in rows
            ),
            total=total,
            page=page,
            limit=limit,
        )
