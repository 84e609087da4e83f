from datetime import timedelta
from unittest import mock

import pytest
from sqlalchemy.exc import OperationalError

from database import session_scope
from gateways.base import GatewayResult, GatewayTimeoutError
from models import CourseRegistration, PaymentRecord, PaymentStatus, RegistrationStatus
from services import enrollment_service, ledger_service
from services.errors import GatewayTimeout, PaymentInProgress, PersistenceError
from services.reconciliation_service import PaymentReconciler
from utils.time import utcnow

from conftest import COURSE_PRICE


@pytest.fixture
def reconciler(catalog, toss, iamport):
    # stale_after=0 makes every unresolved attempt eligible immediately
    return PaymentReconciler(catalog, {"tosspayments": toss, "iamport": iamport}, stale_after=timedelta(0))


@pytest.fixture
def timed_out_order(orchestrator, prepare_order, toss):
    toss.confirm_error = GatewayTimeoutError("tosspayments", "read timeout")
    descriptor = prepare_order()
    with pytest.raises(GatewayTimeout):
        orchestrator.confirm(
            order_id=descriptor.order_id, payment_key="pk_unknown", amount=COURSE_PRICE, provider="tosspayments",
        )
    toss.confirm_error = None
    return descriptor


def _record(session_factory, order_id):
    with session_scope(session_factory) as db:
        return ledger_service.get_by_order_id(db, order_id)


def _gateway_state(order_id, status, amount=COURSE_PRICE):
    return GatewayResult(
        success=True,
        provider="tosspayments",
        order_id=order_id,
        payment_key="pk_unknown",
        amount=amount,
        status=status,
        method="card",
    )


def test_timed_out_order_resolved_as_paid(reconciler, timed_out_order, toss, catalog):
    toss.query_result = _gateway_state(timed_out_order.order_id, "paid")

    report = reconciler.run()

    assert report.resolved_paid == 1
    assert report.enrollments_retried == 1
    assert toss.query_calls == ["pk_unknown"]
    record = _record(catalog, timed_out_order.order_id)
    assert record.status == PaymentStatus.PAID
    assert record.provider_transaction_id == "pk_unknown"
    assert record.attempted_payment_key is None
    with session_scope(catalog) as db:
        registration = db.query(CourseRegistration).one()
    assert registration.status == RegistrationStatus.APPROVED
    assert registration.payment_id == timed_out_order.order_id


def test_timed_out_order_resolved_as_failed(reconciler, timed_out_order, toss, catalog):
    toss.query_result = _gateway_state(timed_out_order.order_id, "failed")

    report = reconciler.run()

    assert report.resolved_failed == 1
    record = _record(catalog, timed_out_order.order_id)
    assert record.status == PaymentStatus.FAILED
    assert "failed" in record.fail_reason


def test_unsettled_payment_stays_pending(reconciler, timed_out_order, toss, catalog):
    toss.query_result = _gateway_state(timed_out_order.order_id, "pending")

    report = reconciler.run()

    assert report.still_pending == 1
    record = _record(catalog, timed_out_order.order_id)
    assert record.status == PaymentStatus.PENDING
    assert record.processing_token is None


def test_query_timeout_stays_pending(reconciler, timed_out_order, toss, catalog):
    toss.query_error = GatewayTimeoutError("tosspayments", "read timeout")

    report = reconciler.run()

    assert report.still_pending == 1
    assert _record(catalog, timed_out_order.order_id).status == PaymentStatus.PENDING


def test_settled_amount_mismatch_fails(reconciler, timed_out_order, toss, catalog):
    toss.query_result = _gateway_state(timed_out_order.order_id, "paid", amount=1000)

    reconciler.run()

    record = _record(catalog, timed_out_order.order_id)
    assert record.status == PaymentStatus.FAILED
    assert "Amount mismatch" in record.fail_reason


def test_recent_attempts_are_left_alone(catalog, toss, timed_out_order):
    reconciler = PaymentReconciler(catalog, {"tosspayments": toss}, stale_after=timedelta(minutes=15))

    report = reconciler.run()

    assert toss.query_calls == []
    assert report.as_dict() == {
        "resolved_paid": 0,
        "resolved_failed": 0,
        "still_pending": 0,
        "resolved_cancelled": 0,
        "released_claims": 0,
        "enrollments_retried": 0,
        "errors": 0,
    }


def test_untouched_pending_orders_are_not_queried(reconciler, prepare_order, toss):
    prepare_order()
    reconciler.run()
    assert toss.query_calls == []


def test_duplicate_paid_order_is_not_recorded(reconciler, orchestrator, timed_out_order, prepare_order, toss, catalog):
    # the course was bought through a second order while the first stayed unresolved
    second = prepare_order()
    orchestrator.confirm(order_id=second.order_id, payment_key="pk_2", amount=COURSE_PRICE, provider="tosspayments")
    toss.query_result = _gateway_state(timed_out_order.order_id, "paid")

    report = reconciler.run()

    assert report.errors == 1
    record = _record(catalog, timed_out_order.order_id)
    assert record.status == PaymentStatus.PENDING
    assert "refund required" in record.last_error
    with session_scope(catalog) as db:
        assert db.query(PaymentRecord).filter(PaymentRecord.status == PaymentStatus.PAID).count() == 1


def test_paid_order_without_enrollment_is_enrolled(reconciler, orchestrator, prepare_order, catalog):
    descriptor = prepare_order()
    with mock.patch.object(
        enrollment_service.EnrollmentService, "enroll_paid_order", side_effect=RuntimeError("store down"),
    ):
        orchestrator.confirm(
            order_id=descriptor.order_id, payment_key="pk_123", amount=COURSE_PRICE, provider="tosspayments",
        )

    report = reconciler.run()

    assert report.enrollments_retried == 1
    with session_scope(catalog) as db:
        registration = db.query(CourseRegistration).one()
    assert registration.payment_id == descriptor.order_id
    assert registration.status == RegistrationStatus.APPROVED

    # second sweep finds nothing left to do
    assert reconciler.run().enrollments_retried == 0


def _age_claim(session_factory, order_id, age=timedelta(days=1)):
    with session_scope(session_factory) as db:
        db.query(PaymentRecord).filter(PaymentRecord.order_id == order_id).update(
            {"processing_started_at": utcnow() - age}, synchronize_session=False,
        )


def _db_down(*args, **kwargs):
    raise OperationalError("UPDATE payments", {}, Exception("database unavailable"))


@pytest.fixture
def sweeper(catalog, toss, iamport):
    return PaymentReconciler(catalog, {"tosspayments": toss, "iamport": iamport}, stale_after=timedelta(minutes=1))


@pytest.fixture
def stuck_cancel(orchestrator, paid_order, toss, catalog):
    """A paid order whose cancel timed out and whose claim could not be released."""
    toss.cancel_error = GatewayTimeoutError("tosspayments", "read timeout")
    with mock.patch.object(ledger_service, "release_claim", side_effect=_db_down):
        with pytest.raises(GatewayTimeout):
            orchestrator.cancel(order_id=paid_order.order_id, reason="changed my mind")
    toss.cancel_error = None
    assert _record(catalog, paid_order.order_id).processing_token is not None
    return paid_order


def test_abandoned_cancel_claim_blocks_until_stale(sweeper, orchestrator, stuck_cancel, toss):
    report = sweeper.run()

    assert report.released_claims == 0
    assert toss.query_calls == []
    with pytest.raises(PaymentInProgress):
        orchestrator.cancel(order_id=stuck_cancel.order_id, reason="changed my mind")


def test_abandoned_cancel_claim_released_when_payment_still_active(sweeper, orchestrator, stuck_cancel, toss, catalog):
    _age_claim(catalog, stuck_cancel.order_id)
    toss.query_result = _gateway_state(stuck_cancel.order_id, "paid")

    report = sweeper.run()

    assert report.released_claims == 1
    assert toss.query_calls == ["pk_paid"]
    record = _record(catalog, stuck_cancel.order_id)
    assert record.status == PaymentStatus.PAID
    assert record.processing_token is None

    record = orchestrator.cancel(order_id=stuck_cancel.order_id, reason="changed my mind")
    assert record.status == PaymentStatus.CANCELLED


def test_abandoned_cancel_claim_recorded_when_gateway_cancelled(sweeper, stuck_cancel, toss, catalog):
    _age_claim(catalog, stuck_cancel.order_id)
    toss.query_result = _gateway_state(stuck_cancel.order_id, "cancelled")

    report = sweeper.run()

    assert report.resolved_cancelled == 1
    record = _record(catalog, stuck_cancel.order_id)
    assert record.status == PaymentStatus.CANCELLED
    assert record.refund_amount == COURSE_PRICE
    assert record.processing_token is None


def test_abandoned_cancel_query_timeout_still_releases(sweeper, orchestrator, stuck_cancel, toss, catalog):
    _age_claim(catalog, stuck_cancel.order_id)
    toss.query_error = GatewayTimeoutError("tosspayments", "read timeout")

    report = sweeper.run()

    assert report.released_claims == 1
    record = _record(catalog, stuck_cancel.order_id)
    assert record.status == PaymentStatus.PAID
    assert record.processing_token is None
    assert "outcome unknown" in record.last_error


def test_refund_recorded_when_write_failed_after_gateway_refunded(sweeper, orchestrator, paid_order, toss, catalog):
    with mock.patch.object(ledger_service, "mark_cancelled", side_effect=_db_down):
        with pytest.raises(PersistenceError):
            orchestrator.cancel(order_id=paid_order.order_id, reason="first week only", amount=100000)
    assert toss.cancel_calls == [("pk_paid", "first week only", 100000)]
    assert _record(catalog, paid_order.order_id).status == PaymentStatus.PAID

    _age_claim(catalog, paid_order.order_id)
    refunded = _gateway_state(paid_order.order_id, "refunded")
    refunded.cancelled_amount = 100000
    toss.query_result = refunded

    report = sweeper.run()

    assert report.resolved_cancelled == 1
    record = _record(catalog, paid_order.order_id)
    assert record.status == PaymentStatus.REFUNDED
    assert record.refund_amount == 100000
    assert record.processing_token is None


def test_crashed_confirm_claim_blocks_until_swept(sweeper, orchestrator, prepare_order, toss, catalog):
    # a confirm worker took the claim and died before reaching the gateway
    descriptor = prepare_order()
    with session_scope(catalog) as db:
        record = ledger_service.get_by_order_id(db, descriptor.order_id)
        ledger_service.claim_for_confirm(db, record, "crashed-worker", "pk_lost")
    kwargs = dict(order_id=descriptor.order_id, payment_key="pk_lost", amount=COURSE_PRICE, provider="tosspayments")

    with pytest.raises(PaymentInProgress):
        orchestrator.confirm(**kwargs)
    assert sweeper.run().still_pending == 0

    _age_claim(catalog, descriptor.order_id)
    toss.query_result = _gateway_state(descriptor.order_id, "pending")
    report = sweeper.run()

    assert report.still_pending == 1
    assert toss.query_calls == ["pk_lost"]
    assert _record(catalog, descriptor.order_id).processing_token is None

    record = orchestrator.confirm(**kwargs)
    assert record.status == PaymentStatus.PAID
    assert toss.confirm_calls == [("pk_lost", descriptor.order_id, COURSE_PRICE)]


def test_crashed_confirm_claim_resolved_as_paid(sweeper, prepare_order, toss, catalog):
    descriptor = prepare_order()
    with session_scope(catalog) as db:
        record = ledger_service.get_by_order_id(db, descriptor.order_id)
        ledger_service.claim_for_confirm(db, record, "crashed-worker", "pk_unknown")
    _age_claim(catalog, descriptor.order_id)
    toss.query_result = _gateway_state(descriptor.order_id, "paid")

    report = sweeper.run()

    assert report.resolved_paid == 1
    record = _record(catalog, descriptor.order_id)
    assert record.status == PaymentStatus.PAID
    assert record.provider_transaction_id == "pk_unknown"
