"""
Selector tests: movement listing and history, linked documents, balance
reads and returnable quantities.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from stock_kernel.domain.dtos import BalanceKey, LineInput, MovementFilter, ReturnLineRequest
from stock_kernel.domain.movement import DocStatus, MovementType
from stock_kernel.exceptions import MovementNotFoundError


@pytest.fixture
def receive(product_id, location_a):
    def _line(qty, **kwargs):
        kwargs.setdefault("product_id", product_id)
        kwargs.setdefault("to_location_id", location_a)
        return LineInput(qty=qty, **kwargs)

    return _line


# =========================================================================
# MovementSelector
# =========================================================================


class TestMovementLookup:

    def test_get_and_by_number(self, create_movement, movement_selector, receive):
        doc = create_movement(MovementType.RECEIVE, receive("4"), note="Pallet 9")

        view = movement_selector.get(doc.id)
        assert view.doc_number == doc.doc_number
        assert view.status is DocStatus.DRAFT
        assert view.item_count == 1
        assert view.lines[0].qty == Decimal("4")

        assert movement_selector.get_by_doc_number(doc.doc_number).id == doc.id

    def test_missing_returns_none(self, movement_selector):
        assert movement_selector.get(uuid4()) is None
        assert movement_selector.get_by_doc_number("MOV0000-000000") is None


class TestMovementList:

    def test_newest_first_and_paging(self, create_movement, movement_selector, receive):
        docs = [create_movement(MovementType.RECEIVE, receive("1")) for _ in range(5)]

        page = movement_selector.list(page=1, limit=2)
        assert page.total == 5
        assert page.pages == 3
        assert [v.doc_number for v in page.items] == [docs[4].doc_number, docs[3].doc_number]

        last = movement_selector.list(page=3, limit=2)
        assert [v.doc_number for v in last.items] == [docs[0].doc_number]

    def test_filters(self, create_movement, post_new, movement_selector, receive, product_id, location_a):
        post_new(MovementType.RECEIVE, receive("10"))
        issue = create_movement(
            MovementType.ISSUE,
            LineInput(product_id=product_id, from_location_id=location_a, qty=1, order_ref="SO-778"),
            note="Urgent shipment",
        )

        by_type = movement_selector.list(MovementFilter(type=MovementType.ISSUE))
        assert [v.id for v in by_type.items] == [issue.id]

        by_status = movement_selector.list(MovementFilter(status=DocStatus.POSTED))
        assert by_status.total == 1

        by_note = movement_selector.list(MovementFilter(search="urgent"))
        assert [v.id for v in by_note.items] == [issue.id]

        by_number = movement_selector.list(MovementFilter(search=issue.doc_number))
        assert by_number.total == 1

        by_ref = movement_selector.list(MovementFilter(order_ref="so-778"))
        assert [v.id for v in by_ref.items] == [issue.id]

    def test_created_range(self, create_movement, movement_selector, receive):
        create_movement(MovementType.RECEIVE, receive("1"))
        future = datetime.now(timezone.utc) + timedelta(days=1)

        assert movement_selector.list(MovementFilter(created_from=future)).total == 0
        assert movement_selector.list(MovementFilter(created_to=future)).total == 1

    def test_limit_capped(self, movement_selector):
        page = movement_selector.list(limit=10_000)
        assert page.limit == 200


class TestLinkedMovements:

    def test_reversal_links_both_ways(
        self, post_new, reversal_service, movement_service, movement_selector, receive, test_actor_id
    ):
        original = post_new(MovementType.RECEIVE, receive("5"))
        cancelled = reversal_service.create_reversal(original.id, test_actor_id)
        movement_service.cancel(cancelled.id, test_actor_id)
        reversal = reversal_service.create_reversal(original.id, test_actor_id)

        children = movement_selector.linked_movements(original.id)
        assert [v.id for v in children] == [reversal.id]

        parents = movement_selector.linked_movements(reversal.id)
        assert [v.id for v in parents] == [original.id]


class TestProductHistory:

    def test_posted_lines_only(self, post_new, create_movement, movement_selector, receive, product_id):
        first = post_new(MovementType.RECEIVE, receive("5"))
        second = post_new(MovementType.RECEIVE, receive("3"), receive("2"))
        create_movement(MovementType.RECEIVE, receive("100"))

        history = movement_selector.posted_lines_for_product(product_id)

        assert history.total == 3
        assert {e.movement_id for e in history.items} == {first.id, second.id}
        assert all(e.movement_type is MovementType.RECEIVE for e in history.items)

    def test_variant_filter(self, post_new, movement_selector, receive, second_product_id, variant_id):
        post_new(
            MovementType.RECEIVE,
            receive("1", product_id=second_product_id, variant_id=variant_id),
            receive("2", product_id=second_product_id),
        )
        history = movement_selector.posted_lines_for_product(second_product_id, variant_id)
        assert [e.line.qty for e in history.items] == [Decimal("1")]


# =========================================================================
# BalanceSelector
# =========================================================================


class TestBalanceSelector:

    def test_balances_for_product_and_location(
        self, post_new, balance_selector, receive, product_id, second_product_id, variant_id,
        location_a, location_b,
    ):
        post_new(
            MovementType.RECEIVE,
            receive("5"),
            receive("7", to_location_id=location_b),
            receive("2", product_id=second_product_id, variant_id=variant_id),
        )

        by_product = {v.location_id: v.qty_on_hand for v in balance_selector.balances_for_product(product_id)}
        assert by_product == {location_a: Decimal("5"), location_b: Decimal("7")}

        every_variant = balance_selector.balances_for_product(second_product_id, include_all_variants=True)
        assert [(v.variant_id, v.qty_on_hand) for v in every_variant] == [(variant_id, Decimal("2"))]

        at_a = {v.product_id for v in balance_selector.balances_for_location(location_a)}
        assert at_a == {product_id, second_product_id}

    def test_zero_balances_hidden_by_default(
        self, post_new, balance_selector, receive, product_id, location_a
    ):
        post_new(MovementType.RECEIVE, receive("5"))
        post_new(MovementType.ADJUST, receive("-5"))

        assert balance_selector.balances_for_location(location_a) == ()
        assert len(balance_selector.balances_for_location(location_a, include_zero=True)) == 1

    def test_batch_quantities(self, post_new, balance_selector, receive, product_id, location_a, location_b):
        post_new(MovementType.RECEIVE, receive("9"))
        known = BalanceKey(product_id, None, location_a)
        unknown = BalanceKey(product_id, None, location_b)

        assert balance_selector.batch_quantities([known, unknown, known]) == {
            known: Decimal("9"),
            unknown: Decimal("0"),
        }
        assert balance_selector.batch_quantities([]) == {}


# =========================================================================
# ReturnSelector
# =========================================================================


@pytest.fixture
def posted_issue(post_new, receive, product_id, location_a):
    post_new(MovementType.RECEIVE, receive("50"))
    return post_new(
        MovementType.ISSUE,
        LineInput(product_id=product_id, from_location_id=location_a, qty="20"),
    )


class TestReturnSelector:

    def test_returned_and_pending(
        self, posted_issue, return_service, approve, posting_engine, return_selector, test_actor_id
    ):
        line_id = posted_issue.lines[0].id
        posted = return_service.create_return(posted_issue.id, [ReturnLineRequest(line_id, "5")], test_actor_id)
        approve(posted)
        posting_engine.post(posted.id, test_actor_id)
        return_service.create_return(posted_issue.id, [ReturnLineRequest(line_id, "3")], test_actor_id)

        (line,) = return_selector.returnable_lines(posted_issue.id)
        assert line.issued == Decimal("20")
        assert line.returned == Decimal("5")
        assert line.pending == Decimal("3")
        assert line.remaining == Decimal("12")

        assert return_selector.claimed_by_line(posted_issue.id) == {line_id: Decimal("8")}
        assert return_selector.claimed_by_line(posted_issue.id, [DocStatus.POSTED]) == {
            line_id: Decimal("5")
        }

    def test_issues_with_remaining(self, posted_issue, return_service, return_selector, test_actor_id):
        assert [i.movement_id for i in return_selector.issues_with_remaining()] == [posted_issue.id]

        return_service.create_return(
            posted_issue.id,
            [ReturnLineRequest(posted_issue.lines[0].id, "20")],
            test_actor_id,
        )
        assert return_selector.issues_with_remaining() == ()

    def test_unknown_issue(self, return_selector):
        with pytest.raises(MovementNotFoundError):
            return_selector.returnable_lines(uuid4())
