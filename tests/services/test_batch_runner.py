"""
BatchRunner tests: per-item isolation, result ordering, size limits.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from stock_kernel.domain.dtos import LineInput
from stock_kernel.domain.movement import DocStatus, MovementType
from stock_kernel.exceptions import ValidationError
from stock_kernel.services.batch_runner import BatchAction


@pytest.fixture
def issue_of(create_movement, approve, product_id, location_a):
    def _issue(qty):
        return approve(
            create_movement(
                MovementType.ISSUE,
                LineInput(product_id=product_id, from_location_id=location_a, qty=qty),
            )
        )

    return _issue


@pytest.fixture
def submitted(create_movement, movement_service, product_id, location_a, test_actor_id):
    def _submitted():
        doc = create_movement(
            MovementType.RECEIVE,
            LineInput(product_id=product_id, to_location_id=location_a, qty=1),
        )
        movement_service.submit(doc.id, test_actor_id)
        return doc

    return _submitted


class TestBatchPost:

    def test_partial_failure_isolated(
        self, post_new, issue_of, batch_runner, on_hand, product_id, location_a, test_actor_id
    ):
        post_new(
            MovementType.RECEIVE,
            LineInput(product_id=product_id, to_location_id=location_a, qty="50"),
        )
        ok_first = issue_of("20")
        too_big = issue_of("100")
        ok_second = issue_of("30")
        unknown = uuid4()

        result = batch_runner.run(
            [ok_first.id, too_big.id, unknown, ok_second.id],
            BatchAction.POST,
            test_actor_id,
        )

        assert (result.total, result.succeeded, result.failed) == (4, 2, 2)
        assert not result.all_succeeded
        assert [r.id for r in result.results] == [ok_first.id, too_big.id, unknown, ok_second.id]
        assert [r.success for r in result.results] == [True, False, False, True]

        failed_big = result.results[1]
        assert failed_big.doc_number == too_big.doc_number
        assert failed_big.error_code == "INSUFFICIENT_STOCK"

        failed_unknown = result.results[2]
        assert failed_unknown.doc_number == "-"
        assert failed_unknown.error_code == "MOVEMENT_NOT_FOUND"

        assert ok_first.status is DocStatus.POSTED
        assert ok_second.status is DocStatus.POSTED
        assert too_big.status is DocStatus.APPROVED
        assert on_hand(product_id, location_a) == Decimal("0")


class TestBatchTransitions:

    def test_approve_all(self, submitted, batch_runner, test_actor_id):
        docs = [submitted(), submitted()]
        result = batch_runner.run([d.id for d in docs], BatchAction.APPROVE, test_actor_id)

        assert result.all_succeeded
        assert all(d.status is DocStatus.APPROVED for d in docs)
        assert [r.doc_number for r in result.results] == [d.doc_number for d in docs]

    def test_reject_with_reason(self, submitted, batch_runner, test_actor_id):
        doc = submitted()
        batch_runner.run([doc.id], BatchAction.REJECT, test_actor_id, reason="bulk cleanup")

        assert doc.status is DocStatus.REJECTED
        assert doc.note == "[Rejected] bulk cleanup"

    def test_cancel_skips_posted(self, submitted, post_new, batch_runner, product_id, location_a, test_actor_id):
        open_doc = submitted()
        posted = post_new(
            MovementType.RECEIVE,
            LineInput(product_id=product_id, to_location_id=location_a, qty=1),
        )

        result = batch_runner.run([open_doc.id, posted.id], BatchAction.CANCEL, test_actor_id)

        assert [r.success for r in result.results] == [True, False]
        assert result.results[1].error_code == "STATE_CONFLICT"
        assert posted.status is DocStatus.POSTED


class TestBatchLimits:

    def test_empty_list(self, batch_runner, test_actor_id):
        with pytest.raises(ValidationError):
            batch_runner.run([], BatchAction.APPROVE, test_actor_id)

    def test_over_limit(self, batch_runner, test_actor_id):
        with pytest.raises(ValidationError) as exc_info:
            batch_runner.run([uuid4() for _ in range(6)], BatchAction.APPROVE, test_actor_id)
        assert "5" in str(exc_info.value)


class TestBatchLogs:

    def test_batch_id_bound(self, submitted, batch_runner, test_actor_id, captured_logs):
        doc = submitted()
        batch_runner.run([doc.id, uuid4()], BatchAction.APPROVE, test_actor_id)

        logs = captured_logs()
        started = next(r for r in logs if r["message"] == "batch_started")
        completed = next(r for r in logs if r["message"] == "batch_completed")
        failed = next(r for r in logs if r["message"] == "batch_item_failed")

        assert started["batch_id"] == completed["batch_id"] == failed["batch_id"]
        assert completed["succeeded"] == 1
        assert completed["failed"] == 1
        assert failed["level"] == "WARNING"
