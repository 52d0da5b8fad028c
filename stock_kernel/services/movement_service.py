"""
MovementService -- the movement document state machine.

Responsibility:
    Creates and edits DRAFT/REJECTED documents and drives the non-posting
    transitions (submit, approve, reject, cancel).  Every transition is
    looked up in MOVEMENT_WORKFLOW; anything it does not list raises
    StateConflictError naming the current status and the attempted action.

Architecture position:
    Kernel > Services -- imperative shell.
    The POST transition lives in PostingEngine, which reuses this service's
    locking read.

Invariants enforced:
    - Lines are fixed once status >= SUBMITTED (edit only in DRAFT/REJECTED).
    - Submission requires at least one line.
    - Line shape per type: required locations present, TRANSFER source and
      target differ, qty > 0 (ADJUST: qty != 0), unit cost >= 0.
    - Unknown products, variants and locations fail at creation/update
      time when a CatalogReader is configured.
    - Status rows are read with SELECT ... FOR UPDATE before transitioning,
      so concurrent transitions of one document serialize.
    - REVERSAL and RETURN_FROM links and line source references are only
      set by ReversalService and ReturnService (``generated=True``).
    - A RETURN_FROM document is checked against the cumulative return
      bound again when its lines are replaced and when it is submitted.
      A REVERSAL document is checked for a competing active reversal when
      it is submitted.  Both checks lock the linked document first and
      leave the document itself out of the count.

Failure modes:
    - ValidationError for malformed input or an exceeded return bound.
    - MovementNotFoundError for an unknown id.
    - StateConflictError for a transition not in the workflow.
    - DuplicateOperationError when a reversal is resubmitted while another
      reversal of the same document is active.
"""

from collections.abc import Iterable, Mapping, Sequence
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.db.types import ZERO, quantize, to_quantity
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import LineInput, MovementInput, MovementUpdate
from stock_kernel.domain.movement import (
    HAS_LINES,
    INACTIVE_STATUSES,
    LOCATION_ROLES,
    MOVEMENT_WORKFLOW,
    LinkKind,
    MovementType,
    Transition,
    qty_is_valid,
)
from stock_kernel.domain.ports import CatalogReader
from stock_kernel.exceptions import (
    DuplicateOperationError,
    MovementNotFoundError,
    StateConflictError,
    ValidationError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.balance import Lot
from stock_kernel.models.movement import LotMovementLine, MovementDocument, MovementLine
from stock_kernel.selectors.return_selector import ReturnSelector
from stock_kernel.services.base import BaseService
from stock_kernel.services.sequence_service import SequenceService

logger = get_logger("services.movement")

REJECTED_TAG = "[Rejected]"
CANCELLED_TAG = "[Cancelled]"

# Links that only the reversal and return generators may set.
GENERATED_LINKS: frozenset[LinkKind] = frozenset({LinkKind.REVERSAL, LinkKind.RETURN_FROM})


def append_note(note: str | None, tag: str, reason: str | None) -> str | None:
    """Append ``"<tag> <reason>"`` on a new line; unchanged without a reason."""
    if not reason:
        return note
    annotation = f"{tag} {reason}"
    return f"{note}\n{annotation}" if note else annotation


def qty_by_source_line(lines: Iterable[MovementLine]) -> dict[UUID, Decimal]:
    """Total line qty per ``source_line_id``."""
    totals: dict[UUID, Decimal] = {}
    for line in lines:
        totals[line.source_line_id] = totals.get(line.source_line_id, ZERO) + quantize(line.qty)
    return totals


class MovementService(BaseService):
    """
    Document lifecycle operations short of posting.

    Contract:
        Every method takes the acting user's id, flushes, and returns the
        ORM document.  The caller commits.

    Non-goals:
        - Does NOT touch balances.  Only PostingEngine does.
        - Does NOT check roles or permissions.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        catalog: CatalogReader | None = None,
        sequence_service: SequenceService | None = None,
        doc_type: str = SequenceService.MOVEMENT,
    ):
        super().__init__(session, clock)
        self.catalog = catalog
        self.sequences = sequence_service or SequenceService(session, self.clock)
        self.doc_type = doc_type

    # -------------------------------------------------------------------------
    # Reads shared with the posting/reversal services
    # -------------------------------------------------------------------------

    def get(self, movement_id: UUID) -> MovementDocument:
        doc = self.session.get(MovementDocument, movement_id)
        if doc is None:
            raise MovementNotFoundError(str(movement_id))
        return doc

    def lock(self, movement_id: UUID) -> MovementDocument:
        """
        Re-read a document with a row lock, refreshing any cached state.

        Raises:
            MovementNotFoundError: Unknown id.
        """
        doc = self.session.execute(
            select(MovementDocument)
            .where(MovementDocument.id == movement_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if doc is None:
            raise MovementNotFoundError(str(movement_id))
        return doc

    def check_transition(self, doc: MovementDocument, action: str) -> Transition:
        """
        Look up ``action`` for the document's current status.

        Raises:
            StateConflictError: The workflow has no such transition.
        """
        transition = MOVEMENT_WORKFLOW.transition_for(doc.status, action)
        if transition is None:
            raise StateConflictError(doc.doc_number, doc.status.value, action)
        if transition.guard is HAS_LINES and not doc.lines:
            raise ValidationError(
                f"Movement {doc.doc_number} has no lines to {action}",
                field="lines",
            )
        return transition

    # -------------------------------------------------------------------------
    # Create / update
    # -------------------------------------------------------------------------

    def create(
        self,
        data: MovementInput,
        actor_id: UUID,
        *,
        generated: bool = False,
    ) -> MovementDocument:
        """
        Create a DRAFT document with a freshly allocated number.

        ``generated`` is passed by ReversalService and ReturnService, which
        have already validated the link and the line source references.
        Their lines copy lines of a posted document, so the catalog is not
        consulted again.
        Other callers may not link a document as REVERSAL or RETURN_FROM
        and may not set ``source_line_id``.

        Raises:
            ValidationError: Empty lines, a malformed line, or a generated
                link or source reference from an outside caller.
            SequenceNotConfiguredError: No counter row for the doc type.
        """
        if not generated:
            if data.link is not None and data.link.kind in GENERATED_LINKS:
                raise ValidationError(
                    f"{data.link.kind.value} documents can only be generated "
                    f"from a posted document",
                    field="link",
                )
            self._check_no_source_lines(data.lines)

        lines = self._build_lines(data.type, data.lines, actor_id, check_catalog=not generated)

        doc = MovementDocument(
            id=uuid4(),
            doc_number=self.sequences.next_number(self.doc_type),
            type=data.type,
            status=MOVEMENT_WORKFLOW.initial_state,
            note=data.note,
            reason=data.reason,
            project_code=data.project_code,
            created_by_id=actor_id,
        )
        doc.link = data.link
        doc.lines = lines
        self.session.add(doc)
        self.session.flush()

        logger.info(
            "movement_created",
            extra={
                "movement_id": str(doc.id),
                "doc_number": doc.doc_number,
                "movement_type": doc.type.value,
                "line_count": len(lines),
                "link_kind": doc.link_kind.value if doc.link_kind else None,
            },
        )
        return doc

    def update(
        self,
        movement_id: UUID,
        data: MovementUpdate,
        actor_id: UUID,
    ) -> MovementDocument:
        """
        Replace lines and header text of a DRAFT or REJECTED document.

        Status is unchanged; a REJECTED document stays REJECTED until
        resubmitted.  Lines of a reversal or return must keep pointing at
        lines of the linked document, and a return must stay within what
        is still returnable.

        Raises:
            StateConflictError: Document is not editable.
            ValidationError: Empty lines, a malformed line, a bad source
                reference or an exceeded return bound.
        """
        doc = self.lock(movement_id)
        self.check_transition(doc, "update")

        origin = self._check_source_lines(doc, data.lines)
        lines = self._build_lines(doc.type, data.lines, actor_id)
        if doc.link_kind is LinkKind.RETURN_FROM:
            self.check_return_bound(origin, qty_by_source_line(lines), exclude_id=doc.id)

        # Old lines must be gone before new ones reuse their line numbers.
        doc.lines.clear()
        self.session.flush()

        doc.lines.extend(lines)
        doc.note = data.note
        doc.reason = data.reason
        doc.project_code = data.project_code
        doc.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "movement_updated",
            extra={
                "movement_id": str(doc.id),
                "doc_number": doc.doc_number,
                "line_count": len(lines),
            },
        )
        return doc

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def submit(self, movement_id: UUID, actor_id: UUID) -> MovementDocument:
        """
        DRAFT/REJECTED -> SUBMITTED.

        Raises:
            ValidationError: A return no longer fits the return bound.
            DuplicateOperationError: Another reversal of the same document
                is active.
        """
        return self._move(movement_id, "submit", actor_id, recheck_link=True)

    def approve(self, movement_id: UUID, actor_id: UUID) -> MovementDocument:
        """SUBMITTED -> APPROVED, recording the approver."""
        doc = self._move(movement_id, "approve", actor_id)
        doc.approved_by_id = actor_id
        self.session.flush()
        return doc

    def reject(
        self,
        movement_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> MovementDocument:
        """SUBMITTED -> REJECTED; the reason is appended to the note."""
        return self._move(movement_id, "reject", actor_id, note_tag=REJECTED_TAG, reason=reason)

    def cancel(
        self,
        movement_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> MovementDocument:
        """Any non-terminal status -> CANCELLED; the reason is appended to the note."""
        return self._move(movement_id, "cancel", actor_id, note_tag=CANCELLED_TAG, reason=reason)

    def _move(
        self,
        movement_id: UUID,
        action: str,
        actor_id: UUID,
        note_tag: str | None = None,
        reason: str | None = None,
        recheck_link: bool = False,
    ) -> MovementDocument:
        doc = self.lock(movement_id)
        transition = self.check_transition(doc, action)
        if recheck_link:
            self._recheck_link(doc)

        from_status = doc.status
        doc.status = transition.to_state
        doc.updated_by_id = actor_id
        if note_tag is not None:
            doc.note = append_note(doc.note, note_tag, reason)
        self.session.flush()

        logger.info(
            f"movement_{doc.status.value.lower()}",
            extra={
                "movement_id": str(doc.id),
                "doc_number": doc.doc_number,
                "from_status": from_status.value,
                "to_status": doc.status.value,
                "reason": reason,
            },
        )
        return doc

    # -------------------------------------------------------------------------
    # Reversal and return links
    # -------------------------------------------------------------------------

    def active_reversal_of(
        self,
        movement_id: UUID,
        exclude_id: UUID | None = None,
    ) -> MovementDocument | None:
        """Oldest reversal of ``movement_id`` not CANCELLED or REJECTED."""
        query = select(MovementDocument).where(
            MovementDocument.link_kind == LinkKind.REVERSAL,
            MovementDocument.link_target_id == movement_id,
            MovementDocument.status.not_in(list(INACTIVE_STATUSES)),
        )
        if exclude_id is not None:
            query = query.where(MovementDocument.id != exclude_id)
        return self.session.execute(
            query.order_by(MovementDocument.created_at).limit(1)
        ).scalar_one_or_none()

    def check_return_bound(
        self,
        issue: MovementDocument,
        requested: Mapping[UUID, Decimal],
        exclude_id: UUID | None = None,
    ) -> None:
        """
        Refuse ``requested`` qty per ISSUE line beyond what active returns
        (other than ``exclude_id``) leave returnable.  The caller holds the
        lock on ``issue``.

        Raises:
            ValidationError: A line would be returned beyond its issued qty.
        """
        claimed = ReturnSelector(self.session).claimed_by_line(
            issue.id, exclude_movement_id=exclude_id
        )
        issue_lines = {line.id: line for line in issue.lines}
        for line_id, total in requested.items():
            line = issue_lines[line_id]
            remaining = quantize(line.qty) - claimed.get(line_id, ZERO)
            if total > remaining:
                raise ValidationError(
                    f"Return qty {total} exceeds the {remaining} still returnable "
                    f"on line {line.line_no} of {issue.doc_number}",
                    field="lines",
                )

    def _recheck_link(self, doc: MovementDocument) -> None:
        link = doc.link
        if link is None or link.kind not in GENERATED_LINKS:
            return

        origin = self.lock(link.target_id)
        if link.kind is LinkKind.REVERSAL:
            existing = self.active_reversal_of(origin.id, exclude_id=doc.id)
            if existing is not None:
                raise DuplicateOperationError(
                    origin.doc_number, existing.doc_number, str(existing.id)
                )
        else:
            self.check_return_bound(origin, qty_by_source_line(doc.lines), exclude_id=doc.id)

    def _check_source_lines(
        self,
        doc: MovementDocument,
        inputs: Sequence[LineInput],
    ) -> MovementDocument | None:
        """
        Validate replacement lines against the document a reversal or return
        was generated from.  Returns that document, locked, or None for an
        unlinked document.
        """
        link = doc.link
        if link is None or link.kind not in GENERATED_LINKS:
            self._check_no_source_lines(inputs)
            return None

        origin = self.lock(link.target_id)
        origin_lines = {line.id: line for line in origin.lines}
        for index, item in enumerate(inputs):
            field = f"lines[{index}].source_line_id"
            source = origin_lines.get(item.source_line_id)
            if source is None:
                raise ValidationError(
                    f"Line {index + 1}: must reference a line of {origin.doc_number}",
                    field=field,
                )
            if (item.product_id, item.variant_id) != (source.product_id, source.variant_id):
                raise ValidationError(
                    f"Line {index + 1}: product differs from line {source.line_no} "
                    f"of {origin.doc_number}",
                    field=field,
                )
            if link.kind is LinkKind.RETURN_FROM and (
                (item.to_location_id, item.lot_id) != (source.from_location_id, source.lot_id)
            ):
                raise ValidationError(
                    f"Line {index + 1}: goods of line {source.line_no} of "
                    f"{origin.doc_number} go back to the location and lot they were issued from",
                    field=field,
                )
        return origin

    @staticmethod
    def _check_no_source_lines(inputs: Sequence[LineInput]) -> None:
        for index, item in enumerate(inputs):
            if item.source_line_id is not None:
                raise ValidationError(
                    f"Line {index + 1}: only reversals and returns reference source lines",
                    field=f"lines[{index}].source_line_id",
                )

    # -------------------------------------------------------------------------
    # Line validation and lot resolution
    # -------------------------------------------------------------------------

    def _build_lines(
        self,
        movement_type: MovementType,
        inputs: Sequence[LineInput],
        actor_id: UUID,
        check_catalog: bool = True,
    ) -> list[MovementLine]:
        if not inputs:
            raise ValidationError("A movement needs at least one line", field="lines")

        roles = LOCATION_ROLES[movement_type]
        lines: list[MovementLine] = []

        for line_no, item in enumerate(inputs, start=1):
            field_prefix = f"lines[{line_no - 1}]"
            qty = self._parse_qty(item.qty, f"{field_prefix}.qty")
            unit_cost = self._parse_qty(item.unit_cost, f"{field_prefix}.unit_cost")

            if not qty_is_valid(movement_type, qty):
                expected = "non-zero" if movement_type is MovementType.ADJUST else "positive"
                raise ValidationError(
                    f"Line {line_no}: qty must be {expected} for {movement_type.value}, got {qty}",
                    field=f"{field_prefix}.qty",
                )
            if unit_cost < ZERO:
                raise ValidationError(
                    f"Line {line_no}: unit cost cannot be negative",
                    field=f"{field_prefix}.unit_cost",
                )

            from_id = item.from_location_id if roles.needs_from else None
            to_id = item.to_location_id if roles.needs_to else None
            if roles.needs_from and from_id is None:
                raise ValidationError(
                    f"Line {line_no}: {movement_type.value} requires a source location",
                    field=f"{field_prefix}.from_location_id",
                )
            if roles.needs_to and to_id is None:
                raise ValidationError(
                    f"Line {line_no}: {movement_type.value} requires a target location",
                    field=f"{field_prefix}.to_location_id",
                )
            if movement_type is MovementType.TRANSFER and from_id == to_id:
                raise ValidationError(
                    f"Line {line_no}: transfer source and target must differ",
                    field=f"{field_prefix}.to_location_id",
                )

            if check_catalog:
                self._check_catalog(item, from_id, to_id, line_no, field_prefix)

            line = MovementLine(
                id=uuid4(),
                line_no=line_no,
                product_id=item.product_id,
                variant_id=item.variant_id,
                from_location_id=from_id,
                to_location_id=to_id,
                qty=qty,
                unit_cost=unit_cost,
                note=item.note,
                order_ref=item.order_ref,
                source_line_id=item.source_line_id,
            )

            lot_id = self._resolve_lot(movement_type, item, qty, actor_id, line_no, field_prefix)
            if lot_id is not None:
                line.lot_line = LotMovementLine(id=uuid4(), lot_id=lot_id, qty=qty)

            lines.append(line)

        return lines

    @staticmethod
    def _parse_qty(value: Decimal | int | str, field: str) -> Decimal:
        try:
            return to_quantity(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(str(exc), field=field) from exc

    def _check_catalog(
        self,
        item: LineInput,
        from_id: UUID | None,
        to_id: UUID | None,
        line_no: int,
        field_prefix: str,
    ) -> None:
        if self.catalog is None:
            return
        if not self.catalog.product_exists(item.product_id):
            raise ValidationError(
                f"Line {line_no}: unknown product {item.product_id}",
                field=f"{field_prefix}.product_id",
            )
        if item.variant_id is not None and not self.catalog.variant_belongs_to(
            item.variant_id, item.product_id
        ):
            raise ValidationError(
                f"Line {line_no}: variant {item.variant_id} does not belong to product {item.product_id}",
                field=f"{field_prefix}.variant_id",
            )
        for field_name, location_id in (("from_location_id", from_id), ("to_location_id", to_id)):
            if location_id is not None and not self.catalog.location_exists(location_id):
                raise ValidationError(
                    f"Line {line_no}: unknown location {location_id}",
                    field=f"{field_prefix}.{field_name}",
                )

    def _resolve_lot(
        self,
        movement_type: MovementType,
        item: LineInput,
        qty: Decimal,
        actor_id: UUID,
        line_no: int,
        field_prefix: str,
    ) -> UUID | None:
        if item.lot_id is not None and item.new_lot_number:
            raise ValidationError(
                f"Line {line_no}: give either an existing lot or a new lot number, not both",
                field=f"{field_prefix}.lot_id",
            )

        if item.lot_id is not None:
            lot = self.session.get(Lot, item.lot_id)
            if lot is None or lot.product_id != item.product_id:
                raise ValidationError(
                    f"Line {line_no}: lot {item.lot_id} does not belong to product {item.product_id}",
                    field=f"{field_prefix}.lot_id",
                )
            return lot.id

        if item.new_lot_number is None:
            return None

        if movement_type is not MovementType.RECEIVE:
            raise ValidationError(
                f"Line {line_no}: new lots can only be created by RECEIVE",
                field=f"{field_prefix}.new_lot_number",
            )

        lot_number = item.new_lot_number.strip()
        if not lot_number:
            raise ValidationError(
                f"Line {line_no}: new lot number cannot be blank",
                field=f"{field_prefix}.new_lot_number",
            )
        existing = self.session.execute(
            select(Lot).where(
                Lot.product_id == item.product_id,
                Lot.lot_number == lot_number,
            )
        ).scalar_one_or_none()
        if existing is not None:
            return existing.id

        lot = Lot(
            id=uuid4(),
            product_id=item.product_id,
            variant_id=item.variant_id,
            lot_number=lot_number,
            expiry_date=item.new_lot_expiry,
            qty_received=qty,
            created_by_id=actor_id,
        )
        self.session.add(lot)
        self.session.flush()
        logger.info(
            "lot_created",
            extra={
                "lot_id": str(lot.id),
                "lot_number": lot_number,
                "product_id": str(item.product_id),
            },
        )
        return lot.id
