from unittest import mock

import pytest

from database import session_scope
from gateways.base import GatewayResult, GatewayTimeoutError
from models import CourseRegistration, PaymentStatus, RegistrationStatus
from services import enrollment_service, ledger_service
from services.errors import (
    AlreadyProcessed,
    AlreadyPurchased,
    AmountMismatch,
    Forbidden,
    GatewayDeclined,
    GatewayTimeout,
    InvalidRequest,
    OrderNotFound,
    PaymentInProgress,
    ProviderMismatch,
)

from conftest import COURSE_PRICE


def _record(session_factory, order_id):
    with session_scope(session_factory) as db:
        return ledger_service.get_by_order_id(db, order_id)


def _registrations(session_factory, user_id="user-1", course_id="course-101"):
    with session_scope(session_factory) as db:
        return (
            db.query(CourseRegistration)
            .filter(CourseRegistration.user_id == user_id, CourseRegistration.course_id == course_id)
            .all()
        )


def test_confirm_pays_and_enrolls(orchestrator, prepare_order, toss, catalog):
    descriptor = prepare_order()

    record = orchestrator.confirm(
        order_id=descriptor.order_id,
        payment_key="pk_123",
        amount=COURSE_PRICE,
        provider="tosspayments",
        user_id="user-1",
    )

    assert record.status == PaymentStatus.PAID
    assert record.provider_transaction_id == "pk_123"
    assert record.method == "card"
    assert record.approved_at is not None
    assert record.receipt_url == "https://receipts.example.com/pk_123"
    assert toss.confirm_calls == [("pk_123", descriptor.order_id, COURSE_PRICE)]

    registrations = _registrations(catalog)
    assert len(registrations) == 1
    assert registrations[0].status == RegistrationStatus.APPROVED
    assert registrations[0].payment_id == descriptor.order_id


def test_amount_mismatch_fails_without_calling_gateway(orchestrator, prepare_order, toss, catalog):
    descriptor = prepare_order()

    with pytest.raises(AmountMismatch):
        orchestrator.confirm(
            order_id=descriptor.order_id,
            payment_key="pk_123",
            amount=COURSE_PRICE - 1,
            provider="tosspayments",
        )

    record = _record(catalog, descriptor.order_id)
    assert record.status == PaymentStatus.FAILED
    assert "Amount mismatch" in record.fail_reason
    assert toss.confirm_calls == []
    assert _registrations(catalog) == []


def test_repeated_confirm_is_rejected_without_side_effects(orchestrator, prepare_order, toss, catalog):
    descriptor = prepare_order()
    kwargs = dict(order_id=descriptor.order_id, payment_key="pk_123", amount=COURSE_PRICE, provider="tosspayments")
    first = orchestrator.confirm(**kwargs)

    with pytest.raises(AlreadyProcessed):
        orchestrator.confirm(**kwargs)

    record = _record(catalog, descriptor.order_id)
    assert record.status == PaymentStatus.PAID
    assert record.approved_at == first.approved_at
    assert len(toss.confirm_calls) == 1
    assert len(_registrations(catalog)) == 1


def test_provider_mismatch_fails(orchestrator, prepare_order, toss, iamport, catalog):
    descriptor = prepare_order(provider="tosspayments")

    with pytest.raises(ProviderMismatch):
        orchestrator.confirm(
            order_id=descriptor.order_id, payment_key="imp_1", amount=COURSE_PRICE, provider="iamport",
        )

    assert _record(catalog, descriptor.order_id).status == PaymentStatus.FAILED
    assert toss.confirm_calls == [] and iamport.confirm_calls == []


def test_gateway_decline_fails_order_with_diagnostic(orchestrator, prepare_order, toss, catalog):
    toss.confirm_result = GatewayResult.failure("tosspayments", "Card limit exceeded", code="EXCEED_MAX_AMOUNT")
    descriptor = prepare_order()

    with pytest.raises(GatewayDeclined) as excinfo:
        orchestrator.confirm(
            order_id=descriptor.order_id, payment_key="pk_123", amount=COURSE_PRICE, provider="tosspayments",
        )

    assert excinfo.value.details == ["[EXCEED_MAX_AMOUNT] Card limit exceeded"]
    record = _record(catalog, descriptor.order_id)
    assert record.status == PaymentStatus.FAILED
    assert record.fail_reason == "[EXCEED_MAX_AMOUNT] Card limit exceeded"
    assert record.provider_transaction_id is None
    assert _registrations(catalog) == []


def test_gateway_timeout_leaves_order_pending(orchestrator, prepare_order, toss, catalog):
    toss.confirm_error = GatewayTimeoutError("tosspayments", "read timeout")
    descriptor = prepare_order()

    with pytest.raises(GatewayTimeout) as excinfo:
        orchestrator.confirm(
            order_id=descriptor.order_id, payment_key="pk_123", amount=COURSE_PRICE, provider="tosspayments",
        )

    assert excinfo.value.retryable is True
    record = _record(catalog, descriptor.order_id)
    assert record.status == PaymentStatus.PENDING
    assert record.processing_token is None
    assert record.attempted_payment_key == "pk_123"
    assert "read timeout" in record.last_error


def test_unexpected_adapter_error_leaves_order_pending(orchestrator, prepare_order, toss, catalog):
    toss.confirm_error = RuntimeError("boom")
    descriptor = prepare_order()

    with pytest.raises(GatewayTimeout):
        orchestrator.confirm(
            order_id=descriptor.order_id, payment_key="pk_123", amount=COURSE_PRICE, provider="tosspayments",
        )
    assert _record(catalog, descriptor.order_id).status == PaymentStatus.PENDING


def test_confirm_can_be_retried_after_timeout(orchestrator, prepare_order, toss, catalog):
    toss.confirm_error = GatewayTimeoutError("tosspayments", "read timeout")
    descriptor = prepare_order()
    kwargs = dict(order_id=descriptor.order_id, payment_key="pk_123", amount=COURSE_PRICE, provider="tosspayments")
    with pytest.raises(GatewayTimeout):
        orchestrator.confirm(**kwargs)

    toss.confirm_error = None
    record = orchestrator.confirm(**kwargs)
    assert record.status == PaymentStatus.PAID
    assert len(toss.confirm_calls) == 2


def test_settled_amount_differing_from_declared_fails(orchestrator, prepare_order, toss, catalog):
    toss.settled_amount = 1000
    descriptor = prepare_order()

    with pytest.raises(AmountMismatch):
        orchestrator.confirm(
            order_id=descriptor.order_id, payment_key="pk_123", amount=COURSE_PRICE, provider="tosspayments",
        )
    record = _record(catalog, descriptor.order_id)
    assert record.status == PaymentStatus.FAILED
    assert "gateway settled 1000" in record.fail_reason


def test_gateway_reporting_unsettled_payment_leaves_pending(orchestrator, prepare_order, toss, catalog):
    descriptor = prepare_order()
    toss.confirm_result = GatewayResult(
        success=True, provider="tosspayments", order_id=descriptor.order_id,
        payment_key="pk_123", amount=COURSE_PRICE, status="pending",
    )

    with pytest.raises(GatewayTimeout):
        orchestrator.confirm(
            order_id=descriptor.order_id, payment_key="pk_123", amount=COURSE_PRICE, provider="tosspayments",
        )
    assert _record(catalog, descriptor.order_id).status == PaymentStatus.PENDING


def test_failed_order_is_immutable(orchestrator, prepare_order, toss, catalog):
    descriptor = prepare_order()
    with pytest.raises(AmountMismatch):
        orchestrator.confirm(
            order_id=descriptor.order_id, payment_key="pk_123", amount=1, provider="tosspayments",
        )

    with pytest.raises(AlreadyProcessed):
        orchestrator.confirm(
            order_id=descriptor.order_id, payment_key="pk_123", amount=COURSE_PRICE, provider="tosspayments",
        )
    record = _record(catalog, descriptor.order_id)
    assert record.status == PaymentStatus.FAILED
    assert toss.confirm_calls == []


def test_confirm_second_order_for_purchased_course(orchestrator, prepare_order, toss, catalog):
    first = prepare_order()
    second = prepare_order()
    orchestrator.confirm(order_id=first.order_id, payment_key="pk_1", amount=COURSE_PRICE, provider="tosspayments")

    with pytest.raises(AlreadyPurchased):
        orchestrator.confirm(order_id=second.order_id, payment_key="pk_2", amount=COURSE_PRICE, provider="tosspayments")

    assert _record(catalog, second.order_id).status == PaymentStatus.PENDING
    assert len(toss.confirm_calls) == 1


def test_confirm_while_pair_is_being_processed(orchestrator, prepare_order, toss, catalog):
    first = prepare_order()
    second = prepare_order()
    with session_scope(catalog) as db:
        record = ledger_service.get_by_order_id(db, first.order_id)
        ledger_service.claim_for_confirm(db, record, "someone-else", "pk_1")

    with pytest.raises(PaymentInProgress) as excinfo:
        orchestrator.confirm(order_id=second.order_id, payment_key="pk_2", amount=COURSE_PRICE, provider="tosspayments")
    assert excinfo.value.status_code == 409
    assert toss.confirm_calls == []


def test_confirm_unknown_order(orchestrator):
    with pytest.raises(OrderNotFound):
        orchestrator.confirm(order_id="ORDER_0_deadbeef", payment_key="pk", amount=1, provider="tosspayments")


def test_confirm_other_users_order(orchestrator, prepare_order, toss):
    descriptor = prepare_order()
    with pytest.raises(Forbidden):
        orchestrator.confirm(
            order_id=descriptor.order_id, payment_key="pk", amount=COURSE_PRICE,
            provider="tosspayments", user_id="user-2",
        )
    assert toss.confirm_calls == []


def test_confirm_validates_input(orchestrator):
    with pytest.raises(InvalidRequest) as excinfo:
        orchestrator.confirm(order_id=None, payment_key="", amount=None, provider="tosspayments")
    assert excinfo.value.details == [
        "orderId is required",
        "paymentKey is required",
        "amount is required",
    ]


def test_enrollment_failure_keeps_order_paid(orchestrator, prepare_order, catalog):
    descriptor = prepare_order()
    with mock.patch.object(
        enrollment_service.EnrollmentService, "enroll_paid_order", side_effect=RuntimeError("store down"),
    ):
        record = orchestrator.confirm(
            order_id=descriptor.order_id, payment_key="pk_123", amount=COURSE_PRICE, provider="tosspayments",
        )

    assert record.status == PaymentStatus.PAID
    assert _record(catalog, descriptor.order_id).status == PaymentStatus.PAID
    assert _registrations(catalog) == []


def test_enrollment_updates_existing_registration(orchestrator, prepare_order, catalog):
    with session_scope(catalog) as db:
        db.add(CourseRegistration(user_id="user-1", course_id="course-101", status=RegistrationStatus.PENDING))
    descriptor = prepare_order()

    orchestrator.confirm(
        order_id=descriptor.order_id, payment_key="pk_123", amount=COURSE_PRICE, provider="tosspayments",
    )

    registrations = _registrations(catalog)
    assert len(registrations) == 1
    assert registrations[0].status == RegistrationStatus.APPROVED
    assert registrations[0].payment_status == "paid"
    assert registrations[0].payment_id == descriptor.order_id


def test_query_gateway_uses_attempted_payment_key(orchestrator, prepare_order, toss):
    toss.confirm_error = GatewayTimeoutError("tosspayments", "read timeout")
    descriptor = prepare_order()
    with pytest.raises(GatewayTimeout):
        orchestrator.confirm(
            order_id=descriptor.order_id, payment_key="pk_123", amount=COURSE_PRICE, provider="tosspayments",
        )
    toss.query_result = GatewayResult(success=True, provider="tosspayments", payment_key="pk_123", status="paid")

    result = orchestrator.query_gateway(descriptor.order_id)

    assert result.status == "paid"
    assert toss.query_calls == ["pk_123"]


def test_query_gateway_before_any_attempt(orchestrator, prepare_order):
    descriptor = prepare_order()
    with pytest.raises(InvalidRequest):
        orchestrator.query_gateway(descriptor.order_id)
