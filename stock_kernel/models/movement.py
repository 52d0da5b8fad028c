"""
Module: stock_kernel.models.movement
Responsibility: ORM persistence for movement documents, their ordered lines
    and the per-line lot association.
Architecture position: Kernel > Models.  May import from db/ and domain/
    enums only.  MUST NOT import from services/ or selectors/.

Invariants enforced:
    - doc_number is unique (uq_movement_doc_number).
    - posted_at is set iff status == POSTED (ck_movement_posted_at).
    - One lot association per movement line (uq_lot_movement_line).
    - Lines are replaced wholesale on edit; the service layer only allows
      that while status is DRAFT or REJECTED.

Failure modes:
    - IntegrityError on duplicate doc_number or on a posted_at/status
      mismatch.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import Base, TrackedBase, UUIDString
from stock_kernel.db.types import ZERO
from stock_kernel.domain.movement import DocStatus, DocumentLink, LinkKind, MovementType


class MovementDocument(TrackedBase):
    """
    Movement document header -- the aggregate root of the ledger.

    Contract:
        ``type`` never changes after creation.  ``status`` changes only
        through MovementService / PostingEngine, which consult
        MOVEMENT_WORKFLOW.

    Guarantees:
        - ``lines`` are ordered by ``line_no``.
        - ``link`` exposes link_kind/link_target_id as a typed DocumentLink.

    Non-goals:
        - This model does NOT enforce the transition table; a direct
          assignment to ``status`` bypasses it.
    """

    __tablename__ = "movement_documents"

    __table_args__ = (
        UniqueConstraint("doc_number", name="uq_movement_doc_number"),
        Index("idx_movement_status", "status"),
        Index("idx_movement_type", "type"),
        Index("idx_movement_link", "link_kind", "link_target_id"),
        Index("idx_movement_created_at", "created_at"),
        CheckConstraint(
            "(status = 'POSTED' AND posted_at IS NOT NULL) "
            "OR (status <> 'POSTED' AND posted_at IS NULL)",
            name="ck_movement_posted_at",
        ),
    )

    doc_number: Mapped[str] = mapped_column(String(30), nullable=False)

    type: Mapped[MovementType] = mapped_column(
        SAEnum(MovementType, native_enum=False, length=20, name="movement_type"),
        nullable=False,
    )

    status: Mapped[DocStatus] = mapped_column(
        SAEnum(DocStatus, native_enum=False, length=20, name="doc_status"),
        nullable=False,
        default=DocStatus.DRAFT,
    )

    link_kind: Mapped[LinkKind | None] = mapped_column(
        SAEnum(LinkKind, native_enum=False, length=20, name="link_kind"),
        nullable=True,
    )

    link_target_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    note: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    project_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    approved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    posted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    lines: Mapped[list[MovementLine]] = relationship(
        back_populates="movement",
        cascade="all, delete-orphan",
        order_by="MovementLine.line_no",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<MovementDocument {self.doc_number} {self.type.value} status={self.status.value}>"

    @property
    def link(self) -> DocumentLink | None:
        if self.link_kind is None or self.link_target_id is None:
            return None
        return DocumentLink(kind=self.link_kind, target_id=self.link_target_id)

    @link.setter
    def link(self, value: DocumentLink | None) -> None:
        self.link_kind = value.kind if value is not None else None
        self.link_target_id = value.target_id if value is not None else None

    @property
    def is_posted(self) -> bool:
        return self.status == DocStatus.POSTED


class MovementLine(Base):
    """
    One line of a movement document.

    ``qty`` is positive for every type except ADJUST, where the sign
    selects increment or decrement.  ``unit_cost`` is informational and
    never participates in balance arithmetic.
    """

    __tablename__ = "movement_lines"

    __table_args__ = (
        UniqueConstraint("movement_id", "line_no", name="uq_movement_line_no"),
        Index("idx_movement_line_product", "product_id", "variant_id"),
        Index("idx_movement_line_source", "source_line_id"),
    )

    movement_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("movement_documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    variant_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    from_location_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    to_location_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    qty: Mapped[Decimal] = mapped_column(nullable=False)

    unit_cost: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)

    note: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # PR/PO reference carried through from imports
    order_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # RETURN lines: the ISSUE line returned.  Reversal lines: the original line.
    source_line_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    movement: Mapped[MovementDocument] = relationship(back_populates="lines")

    lot_line: Mapped[LotMovementLine | None] = relationship(
        back_populates="movement_line",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<MovementLine #{self.line_no} product={self.product_id} qty={self.qty}>"

    @property
    def lot_id(self) -> UUID | None:
        return self.lot_line.lot_id if self.lot_line is not None else None


class LotMovementLine(Base):
    """Associates a movement line with the lot it moves."""

    __tablename__ = "lot_movement_lines"

    __table_args__ = (
        UniqueConstraint("movement_line_id", name="uq_lot_movement_line"),
        Index("idx_lot_movement_lot", "lot_id"),
    )

    movement_line_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("movement_lines.id", ondelete="CASCADE"),
        nullable=False,
    )

    lot_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("lots.id"),
        nullable=False,
    )

    qty: Mapped[Decimal] = mapped_column(nullable=False)

    movement_line: Mapped[MovementLine] = relationship(back_populates="lot_line")
