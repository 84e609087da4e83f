# routers/payments.py
"""
Payment API.

POST /api/payments/prepare: open a pending order for a course, return the launch descriptor.
POST /api/payments/confirm: settle the order through its gateway after the client checkout.
POST /api/payments/cancel:  cancel (full) or refund (partial) a paid order.
GET  /api/payments/{order_id}: ledger view of one order.

Gateway credentials come from process configuration only. Handlers are plain
`def` so FastAPI runs them in its threadpool; a gateway call that was already
dispatched runs to completion even if the client disconnects.
"""
from fastapi import APIRouter, Depends, Request, status

from schemas.payment import (
     ErrorResponse,
     PaymentCancelRequest,
     PaymentCancelResponse,
     PaymentConfirmRequest,
     PaymentConfirmResponse,
     PaymentPrepareRequest,
     PaymentPrepareResponse,
     PaymentStatusResponse,
)
from services.errors import Forbidden
from services.payment_orchestrator import PaymentOrchestrator
from utils.auth import verify_token

router = APIRouter(prefix="/api/payments", tags=["payments"])

ERROR_RESPONSES = {
     400: {"model": ErrorResponse},
     403: {"model": ErrorResponse},
     404: {"model": ErrorResponse},
     409: {"model": ErrorResponse},
     500: {"model": ErrorResponse},
}


def get_orchestrator(request: Request) -> PaymentOrchestrator:
     """The orchestrator built at startup (see main.create_app)."""
     return request.app.state.orchestrator


def _token_user_id(token: dict) -> str:
     return str(token["id"])


def _status_view(record) -> PaymentStatusResponse:
     return PaymentStatusResponse(
          order_id=record.order_id,
          order_name=record.order_name,
          user_id=record.user_id,
          course_id=record.course_id,
          amount=record.declared_amount,
          provider=record.provider,
          method=record.method,
          status=record.status.value,
          payment_key=record.provider_transaction_id,
          receipt_url=record.receipt_url,
          fail_reason=record.fail_reason,
          refund_reason=record.refund_reason,
          refund_amount=record.refund_amount,
          approved_at=record.approved_at,
          cancelled_at=record.cancelled_at,
          refunded_at=record.refunded_at,
          created_at=record.created_at,
     )


@router.post(
     "/prepare",
     response_model=PaymentPrepareResponse,
     response_model_by_alias=True,
     status_code=status.HTTP_201_CREATED,
     responses=ERROR_RESPONSES,
     summary="Prepare a course payment",
)
def prepare_payment(
     body: PaymentPrepareRequest,
     token: dict = Depends(verify_token),
     orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
     """
     Create a pending order whose amount is the course's catalog price.

     userId defaults to the authenticated user; a different userId is rejected.
     """
     user_id = body.user_id or _token_user_id(token)
     if str(user_id) != _token_user_id(token):
          raise Forbidden("Cannot prepare a payment for another user")

     descriptor = orchestrator.prepare(
          user_id=user_id,
          course_id=body.course_id,
          customer_name=body.customer_name,
          customer_email=body.customer_email,
          provider=body.provider,
          method=body.method,
          success_url=body.success_url,
          fail_url=body.fail_url,
     )
     return PaymentPrepareResponse(
          order_id=descriptor.order_id,
          order_name=descriptor.order_name,
          amount=descriptor.amount,
          customer_name=descriptor.customer_name,
          customer_email=descriptor.customer_email,
          provider=descriptor.provider,
          method=descriptor.method,
          success_url=descriptor.success_url,
          fail_url=descriptor.fail_url,
          provider_credentials=descriptor.provider_credentials,
     )


@router.post(
     "/confirm",
     response_model=PaymentConfirmResponse,
     response_model_by_alias=True,
     responses=ERROR_RESPONSES,
     summary="Confirm a payment",
)
def confirm_payment(
     body: PaymentConfirmRequest,
     token: dict = Depends(verify_token),
     orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
     """
     Settle a pending order through its gateway.

     1. Claims the order so that only this request reaches the gateway.
     2. Checks the claimed amount and provider against the order.
     3. Records paid and enrolls the user.
     """
     record = orchestrator.confirm(
          order_id=body.order_id,
          payment_key=body.payment_key,
          amount=body.amount,
          provider=body.provider,
          user_id=_token_user_id(token),
     )
     return PaymentConfirmResponse(
          order_id=record.order_id,
          payment_key=record.provider_transaction_id,
          amount=record.declared_amount,
          status=record.status.value,
          approved_at=record.approved_at,
          method=record.method,
          receipt_url=record.receipt_url,
     )


@router.post(
     "/cancel",
     response_model=PaymentCancelResponse,
     response_model_by_alias=True,
     responses=ERROR_RESPONSES,
     summary="Cancel or refund a paid order",
)
def cancel_payment(
     body: PaymentCancelRequest,
     token: dict = Depends(verify_token),
     orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
     record = orchestrator.cancel(
          reason=body.reason,
          order_id=body.order_id,
          payment_key=body.payment_key,
          amount=body.amount,
          user_id=_token_user_id(token),
     )
     return PaymentCancelResponse(
          order_id=record.order_id,
          status=record.status.value,
          refund_amount=record.refund_amount,
          cancelled_at=record.cancelled_at,
          refunded_at=record.refunded_at,
     )


@router.get(
     "/{order_id}",
     response_model=PaymentStatusResponse,
     response_model_by_alias=True,
     responses=ERROR_RESPONSES,
     summary="Get an order",
)
def get_payment(
     order_id: str,
     token: dict = Depends(verify_token),
     orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
     record = orchestrator.get_order(order_id, user_id=_token_user_id(token))
     return _status_view(record)
