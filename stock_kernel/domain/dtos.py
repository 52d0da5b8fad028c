"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable structures crossing the kernel boundary: command inputs
    (MovementInput, LineInput, ReturnLineRequest, CountedQuantity) and
    read-side views (MovementView, balance rows, returnable quantities,
    pages, posting and batch results).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods are boundary converters invoked from
    services and selectors, never from domain logic.

Invariants enforced:
    - Quantities are Decimal.  Inputs accept int/str and are converted by
      services through to_quantity(); floats are rejected there.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Generic, TypeVar
from uuid import UUID

from stock_kernel.db.types import ZERO, quantize
from stock_kernel.domain.movement import DocStatus, DocumentLink, MovementType

if TYPE_CHECKING:
    from stock_kernel.models.movement import MovementDocument, MovementLine

T = TypeVar("T")


# =============================================================================
# Command inputs
# =============================================================================


@dataclass(frozen=True)
class LineInput:
    """
    One requested line of a movement document.

    A RECEIVE line may name ``new_lot_number`` (and ``new_lot_expiry``); the
    lot is reused if the product already has one with that number.  Any
    line may reference an existing ``lot_id`` directly.
    """

    product_id: UUID
    qty: Decimal | int | str
    variant_id: UUID | None = None
    from_location_id: UUID | None = None
    to_location_id: UUID | None = None
    unit_cost: Decimal | int | str = ZERO
    note: str | None = None
    order_ref: str | None = None
    lot_id: UUID | None = None
    new_lot_number: str | None = None
    new_lot_expiry: date | None = None
    source_line_id: UUID | None = None


@dataclass(frozen=True)
class MovementInput:
    """Header and lines for a new DRAFT document."""

    type: MovementType
    lines: tuple[LineInput, ...]
    note: str | None = None
    reason: str | None = None
    project_code: str | None = None
    link: DocumentLink | None = None


@dataclass(frozen=True)
class MovementUpdate:
    """Replacement content for an editable (DRAFT/REJECTED) document."""

    lines: tuple[LineInput, ...]
    note: str | None = None
    reason: str | None = None
    project_code: str | None = None


@dataclass(frozen=True)
class ReturnLineRequest:
    """Quantity to return against one line of a posted ISSUE."""

    line_id: UUID
    qty: Decimal | int | str


@dataclass(frozen=True)
class CountedQuantity:
    """Physically counted quantity for one balance key."""

    product_id: UUID
    location_id: UUID
    counted_qty: Decimal | int | str
    variant_id: UUID | None = None
    lot_id: UUID | None = None


@dataclass(frozen=True)
class BalanceKey:
    """Identifies one stock balance row."""

    product_id: UUID
    variant_id: UUID | None
    location_id: UUID


# =============================================================================
# Read-side views
# =============================================================================


@dataclass(frozen=True)
class MovementLineView:
    id: UUID
    line_no: int
    product_id: UUID
    variant_id: UUID | None
    from_location_id: UUID | None
    to_location_id: UUID | None
    qty: Decimal
    unit_cost: Decimal
    note: str | None
    order_ref: str | None
    source_line_id: UUID | None
    lot_id: UUID | None

    @classmethod
    def from_model(cls, line: MovementLine) -> MovementLineView:
        return cls(
            id=line.id,
            line_no=line.line_no,
            product_id=line.product_id,
            variant_id=line.variant_id,
            from_location_id=line.from_location_id,
            to_location_id=line.to_location_id,
            qty=quantize(line.qty),
            unit_cost=quantize(line.unit_cost),
            note=line.note,
            order_ref=line.order_ref,
            source_line_id=line.source_line_id,
            lot_id=line.lot_id,
        )


@dataclass(frozen=True)
class MovementView:
    """Snapshot of a movement document and its ordered lines."""

    id: UUID
    doc_number: str
    type: MovementType
    status: DocStatus
    link: DocumentLink | None
    note: str | None
    reason: str | None
    project_code: str | None
    created_by_id: UUID
    approved_by_id: UUID | None
    posted_at: datetime | None
    lines: tuple[MovementLineView, ...] = field(default_factory=tuple)

    @property
    def item_count(self) -> int:
        return len(self.lines)

    @classmethod
    def from_model(cls, doc: MovementDocument, include_lines: bool = True) -> MovementView:
        return cls(
            id=doc.id,
            doc_number=doc.doc_number,
            type=doc.type,
            status=doc.status,
            link=doc.link,
            note=doc.note,
            reason=doc.reason,
            project_code=doc.project_code,
            created_by_id=doc.created_by_id,
            approved_by_id=doc.approved_by_id,
            posted_at=doc.posted_at,
            lines=(
                tuple(MovementLineView.from_model(line) for line in doc.lines)
                if include_lines
                else ()
            ),
        )


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a paginated query."""

    items: tuple[T, ...]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


@dataclass(frozen=True)
class StockBalanceView:
    product_id: UUID
    variant_id: UUID | None
    location_id: UUID
    qty_on_hand: Decimal


@dataclass(frozen=True)
class LotBalanceView:
    lot_id: UUID
    location_id: UUID
    qty_on_hand: Decimal


@dataclass(frozen=True)
class ReturnableLine:
    """
    Return status of one ISSUE line.

    ``returned`` counts POSTED returns; ``pending`` counts active returns
    not yet posted.  ``remaining = issued - returned - pending``.
    """

    line_id: UUID
    product_id: UUID
    variant_id: UUID | None
    from_location_id: UUID | None
    lot_id: UUID | None
    issued: Decimal
    returned: Decimal
    pending: Decimal

    @property
    def remaining(self) -> Decimal:
        return self.issued - self.returned - self.pending


@dataclass(frozen=True)
class IssueWithRemaining:
    """A posted ISSUE document with at least one line left to return."""

    movement_id: UUID
    doc_number: str
    posted_at: datetime | None
    lines: tuple[ReturnableLine, ...]


# =============================================================================
# Operation results
# =============================================================================


@dataclass(frozen=True)
class PostingResult:
    """Immutable result of a successful posting."""

    movement_id: UUID
    doc_number: str
    movement_type: MovementType
    posted_at: datetime
    lines_applied: int


@dataclass(frozen=True)
class BatchItemResult:
    """Outcome for one id of a batch run.  ``doc_number`` is "-" when unknown."""

    id: UUID
    doc_number: str
    success: bool
    error: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class BatchResult:
    """Outcome of a batch run, with per-id results in input order."""

    total: int
    succeeded: int
    failed: int
    results: tuple[BatchItemResult, ...]

    @property
    def all_succeeded(self) -> bool:
        return self.failed == 0


@dataclass(frozen=True)
class MovementFilter:
    """Criteria for MovementSelector.list; None means "any"."""

    type: MovementType | None = None
    status: DocStatus | None = None
    search: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    order_ref: str | None = None


@dataclass(frozen=True)
class ProductMovementEntry:
    """One posted line in the movement history of a product/variant."""

    movement_id: UUID
    doc_number: str
    movement_type: MovementType
    posted_at: datetime | None
    line: MovementLineView
