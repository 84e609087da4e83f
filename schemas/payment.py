# schemas/payment.py
"""
Pydantic schemas for the payment API.

Field names are snake_case in Python and camelCase on the wire.
Request fields are optional at the schema level so that the orchestrator
can report every missing field at once instead of failing on the first.
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
     model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentPrepareRequest(CamelModel):
     """Request body for POST /api/payments/prepare."""

     course_id: Optional[str] = None
     user_id: Optional[str] = None
     customer_name: Optional[str] = None
     customer_email: Optional[str] = None
     provider: Optional[str] = Field(None, description="tosspayments | iamport")
     method: Optional[str] = Field(None, description="card, bank, phone, kakaopay, naverpay")
     success_url: Optional[str] = None
     fail_url: Optional[str] = None

     model_config = ConfigDict(
          alias_generator=to_camel,
          populate_by_name=True,
          json_schema_extra={
               "example": {
                    "courseId": "course-101",
                    "userId": "user-1",
                    "customerName": "Kim Minji",
                    "customerEmail": "minji@example.com",
                    "provider": "tosspayments",
                    "method": "card",
               }
          },
     )


class PaymentPrepareResponse(CamelModel):
     """Launch descriptor handed to the client-side checkout."""

     order_id: str
     order_name: str
     amount: int
     customer_name: str
     customer_email: str
     provider: str
     method: str
     success_url: str
     fail_url: str
     provider_credentials: Dict[str, str] = Field(default_factory=dict)


class PaymentConfirmRequest(CamelModel):
     """Request body for POST /api/payments/confirm."""

     order_id: Optional[str] = None
     payment_key: Optional[str] = None
     amount: Optional[int] = None
     provider: Optional[str] = None

     model_config = ConfigDict(
          alias_generator=to_camel,
          populate_by_name=True,
          json_schema_extra={
               "example": {
                    "orderId": "ORDER_1760832000000_1a2b3c4d",
                    "paymentKey": "tgen_20261019abcdef",
                    "amount": 480000,
                    "provider": "tosspayments",
               }
          },
     )


class PaymentConfirmResponse(CamelModel):
     order_id: str
     payment_key: Optional[str] = None
     amount: int
     status: str
     approved_at: Optional[datetime] = None
     method: Optional[str] = None
     receipt_url: Optional[str] = None


class PaymentCancelRequest(CamelModel):
     """Request body for POST /api/payments/cancel. Either orderId or paymentKey."""

     order_id: Optional[str] = None
     payment_key: Optional[str] = None
     reason: Optional[str] = None
     amount: Optional[int] = Field(None, description="Partial refund amount; omit for a full cancel")


class PaymentCancelResponse(CamelModel):
     order_id: str
     status: str
     refund_amount: Optional[int] = None
     cancelled_at: Optional[datetime] = None
     refunded_at: Optional[datetime] = None


class PaymentStatusResponse(CamelModel):
     """Ledger view of one order."""

     order_id: str
     order_name: str
     user_id: str
     course_id: str
     amount: int
     provider: str
     method: Optional[str] = None
     status: str
     payment_key: Optional[str] = None
     receipt_url: Optional[str] = None
     fail_reason: Optional[str] = None
     refund_reason: Optional[str] = None
     refund_amount: Optional[int] = None
     approved_at: Optional[datetime] = None
     cancelled_at: Optional[datetime] = None
     refunded_at: Optional[datetime] = None
     created_at: Optional[datetime] = None


class ErrorResponse(BaseModel):
     error: str
     code: str
     retryable: bool = False
     details: List[str] = Field(default_factory=list)
