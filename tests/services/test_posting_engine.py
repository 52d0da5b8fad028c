"""
PostingEngine tests.

Tests cover:
- Ledger scenarios: receive / issue / insufficient issue / transfer
- All-or-nothing application across lines
- Idempotent terminal status: a second post conflicts and changes nothing
- Lot-tracked lines move stock and lot balances together
- Signed ADJUST lines
"""

from decimal import Decimal

import pytest

from stock_kernel.domain.dtos import LineInput
from stock_kernel.domain.movement import DocStatus, MovementType
from stock_kernel.exceptions import (
    InsufficientStockError,
    MovementNotFoundError,
    StateConflictError,
)


@pytest.fixture
def receive(product_id, location_a):
    def _line(qty, product=None, location=None, **kwargs):
        return LineInput(
            product_id=product or product_id,
            to_location_id=location or location_a,
            qty=qty,
            **kwargs,
        )

    return _line


@pytest.fixture
def issue(product_id, location_a):
    def _line(qty, product=None, location=None, **kwargs):
        return LineInput(
            product_id=product or product_id,
            from_location_id=location or location_a,
            qty=qty,
            **kwargs,
        )

    return _line


class TestLedgerScenarios:

    def test_receive_issue_and_insufficient_issue(
        self, post_new, create_movement, approve, posting_engine,
        receive, issue, on_hand, product_id, location_a, test_actor_id,
    ):
        post_new(MovementType.RECEIVE, receive("100"))
        assert on_hand(product_id, location_a) == Decimal("100")

        post_new(MovementType.ISSUE, issue("40"))
        assert on_hand(product_id, location_a) == Decimal("60")

        big = approve(create_movement(MovementType.ISSUE, issue("1000")))
        with pytest.raises(InsufficientStockError) as exc_info:
            posting_engine.post(big.id, test_actor_id)

        exc = exc_info.value
        assert exc.item_label == "Widget"
        assert exc.available == Decimal("60")
        assert exc.requested == Decimal("1000")
        assert on_hand(product_id, location_a) == Decimal("60")
        assert big.status is DocStatus.APPROVED
        assert big.posted_at is None

    def test_transfer_between_locations(
        self, post_new, receive, on_hand, product_id, location_a, location_b
    ):
        post_new(MovementType.RECEIVE, receive("60"))

        post_new(
            MovementType.TRANSFER,
            LineInput(
                product_id=product_id,
                from_location_id=location_a,
                to_location_id=location_b,
                qty="20",
            ),
        )

        assert on_hand(product_id, location_a) == Decimal("40")
        assert on_hand(product_id, location_b) == Decimal("20")

    def test_posting_result(self, create_movement, approve, posting_engine, receive, test_actor_id, deterministic_clock):
        doc = approve(create_movement(MovementType.RECEIVE, receive("1"), receive("2")))

        result = posting_engine.post(doc.id, test_actor_id)

        assert result.movement_id == doc.id
        assert result.doc_number == doc.doc_number
        assert result.movement_type is MovementType.RECEIVE
        assert result.lines_applied == 2
        assert result.posted_at == deterministic_clock.now()
        assert doc.status is DocStatus.POSTED
        assert doc.updated_by_id == test_actor_id

    def test_variant_balances(self, post_new, on_hand, second_product_id, variant_id, location_a):
        post_new(
            MovementType.RECEIVE,
            LineInput(product_id=second_product_id, variant_id=variant_id, to_location_id=location_a, qty=5),
        )
        assert on_hand(second_product_id, location_a, variant_id) == Decimal("5")
        assert on_hand(second_product_id, location_a) == Decimal("0")


class TestAllOrNothing:

    def test_failed_line_rolls_back_earlier_lines(
        self, post_new, create_movement, approve, posting_engine,
        receive, issue, on_hand, product_id, second_product_id, location_a, test_actor_id,
    ):
        post_new(MovementType.RECEIVE, receive("10"))

        doc = approve(
            create_movement(
                MovementType.ISSUE,
                issue("4"),
                issue("1", product=second_product_id),
            )
        )
        with pytest.raises(InsufficientStockError) as exc_info:
            posting_engine.post(doc.id, test_actor_id)

        assert exc_info.value.item_label == "Gadget"
        assert on_hand(product_id, location_a) == Decimal("10")
        assert doc.status is DocStatus.APPROVED

    def test_same_product_lines_checked_cumulatively(
        self, post_new, create_movement, approve, posting_engine,
        receive, issue, on_hand, product_id, location_a, test_actor_id,
    ):
        post_new(MovementType.RECEIVE, receive("10"))
        doc = approve(create_movement(MovementType.ISSUE, issue("6"), issue("6")))

        with pytest.raises(InsufficientStockError):
            posting_engine.post(doc.id, test_actor_id)

        assert on_hand(product_id, location_a) == Decimal("10")

    def test_failed_transfer_leaves_target_untouched(
        self, create_movement, approve, posting_engine, on_hand,
        product_id, location_a, location_b, test_actor_id,
    ):
        doc = approve(
            create_movement(
                MovementType.TRANSFER,
                LineInput(product_id=product_id, from_location_id=location_a, to_location_id=location_b, qty=1),
            )
        )
        with pytest.raises(InsufficientStockError):
            posting_engine.post(doc.id, test_actor_id)

        assert on_hand(product_id, location_b) == Decimal("0")


class TestTerminalStatus:

    def test_second_post_conflicts(self, post_new, posting_engine, receive, on_hand, product_id, location_a, test_actor_id):
        doc = post_new(MovementType.RECEIVE, receive("100"))

        with pytest.raises(StateConflictError) as exc_info:
            posting_engine.post(doc.id, test_actor_id)

        assert exc_info.value.current_status == "POSTED"
        assert on_hand(product_id, location_a) == Decimal("100")

    @pytest.mark.parametrize("steps", [(), ("submit",)])
    def test_post_requires_approved(
        self, movement_service, create_movement, posting_engine, receive, test_actor_id, steps
    ):
        doc = create_movement(MovementType.RECEIVE, receive("1"))
        for step in steps:
            getattr(movement_service, step)(doc.id, test_actor_id)

        with pytest.raises(StateConflictError):
            posting_engine.post(doc.id, test_actor_id)

    def test_cancel_after_post_conflicts(self, post_new, movement_service, receive, test_actor_id):
        doc = post_new(MovementType.RECEIVE, receive("1"))
        with pytest.raises(StateConflictError):
            movement_service.cancel(doc.id, test_actor_id, "too late")

    def test_unknown_movement(self, posting_engine, test_actor_id):
        from uuid import uuid4

        with pytest.raises(MovementNotFoundError):
            posting_engine.post(uuid4(), test_actor_id)


class TestAdjust:

    def test_signed_adjustments(self, post_new, receive, on_hand, product_id, location_a):
        post_new(MovementType.RECEIVE, receive("10"))

        post_new(MovementType.ADJUST, receive("-3"))
        assert on_hand(product_id, location_a) == Decimal("7")

        post_new(MovementType.ADJUST, receive("5"))
        assert on_hand(product_id, location_a) == Decimal("12")

    def test_negative_adjust_cannot_go_below_zero(
        self, create_movement, approve, posting_engine, receive, test_actor_id
    ):
        doc = approve(create_movement(MovementType.ADJUST, receive("-1")))
        with pytest.raises(InsufficientStockError):
            posting_engine.post(doc.id, test_actor_id)


class TestLots:

    def test_lot_and_stock_move_together(
        self, post_new, receive, issue, on_hand, balance_selector, product_id, location_a
    ):
        received = post_new(MovementType.RECEIVE, receive("10", new_lot_number="LOT-7"))
        lot_id = received.lines[0].lot_id

        post_new(MovementType.ISSUE, issue("4", lot_id=lot_id))

        assert on_hand(product_id, location_a) == Decimal("6")
        assert balance_selector.lot_qty(lot_id, location_a) == Decimal("6")

    def test_lot_shortage_blocks_posting(
        self, post_new, create_movement, approve, posting_engine,
        receive, issue, on_hand, balance_selector, product_id, location_a, test_actor_id,
    ):
        received = post_new(MovementType.RECEIVE, receive("5", new_lot_number="LOT-A"))
        post_new(MovementType.RECEIVE, receive("20"))
        lot_id = received.lines[0].lot_id

        doc = approve(create_movement(MovementType.ISSUE, issue("8", lot_id=lot_id)))
        with pytest.raises(InsufficientStockError) as exc_info:
            posting_engine.post(doc.id, test_actor_id)

        assert exc_info.value.item_label == "Widget lot LOT-A"
        assert on_hand(product_id, location_a) == Decimal("25")
        assert balance_selector.lot_qty(lot_id, location_a) == Decimal("5")

    def test_lot_transfer(
        self, post_new, receive, balance_selector, product_id, location_a, location_b
    ):
        received = post_new(MovementType.RECEIVE, receive("10", new_lot_number="LOT-T"))
        lot_id = received.lines[0].lot_id

        post_new(
            MovementType.TRANSFER,
            LineInput(
                product_id=product_id,
                from_location_id=location_a,
                to_location_id=location_b,
                qty="3",
                lot_id=lot_id,
            ),
        )

        assert balance_selector.lot_qty(lot_id, location_a) == Decimal("7")
        assert balance_selector.lot_qty(lot_id, location_b) == Decimal("3")


class TestPostingLogs:

    def test_posted_log_has_duration(self, post_new, receive, captured_logs):
        doc = post_new(MovementType.RECEIVE, receive("1"))

        posted = [r for r in captured_logs() if r["message"] == "movement_posted"]
        assert posted[0]["doc_number"] == doc.doc_number
        assert posted[0]["duration_ms"] >= 0
