# gateways/tosspayments.py
"""
Toss Payments adapter.

Auth is HTTP Basic with the secret key as user name and an empty password.
Confirm settles the payment the client authorized in the Toss widget.
"""
import base64
import logging
from typing import Dict, Optional

from models.payment import PaymentProvider, PaymentStatus
from utils.time import to_naive_utc
from .base import GatewayAdapter, GatewayResult, fails_on_unsent_request, DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)

TOSS_API_URL = "https://api.tosspayments.com/v1"

# Toss payment.status -> ledger status
STATUS_MAP = {
     "READY": PaymentStatus.PENDING.value,
     "IN_PROGRESS": PaymentStatus.PENDING.value,
     "WAITING_FOR_DEPOSIT": PaymentStatus.PENDING.value,
     "DONE": PaymentStatus.PAID.value,
     "CANCELED": PaymentStatus.CANCELLED.value,
     "PARTIAL_CANCELED": PaymentStatus.REFUNDED.value,
     "ABORTED": PaymentStatus.FAILED.value,
     "EXPIRED": PaymentStatus.FAILED.value,
}


def _cancelled_amount(data: dict) -> Optional[int]:
     cancels = data.get("cancels") or []
     if not cancels:
          return None
     return sum(c.get("cancelAmount") or 0 for c in cancels)


class TossPaymentsGateway(GatewayAdapter):
     provider = PaymentProvider.TOSSPAYMENTS.value

     def __init__(
          self,
          secret_key: str,
          client_key: str = "",
          api_url: str = TOSS_API_URL,
          session=None,
          timeout=DEFAULT_TIMEOUT,
     ):
          super().__init__(session=session, timeout=timeout)
          self.secret_key = secret_key
          self.client_key = client_key
          self.api_url = api_url.rstrip("/")

     def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
          auth = base64.b64encode(f"{self.secret_key}:".encode()).decode()
          headers = {
               "Content-Type": "application/json",
               "Authorization": f"Basic {auth}",
          }
          if idempotency_key:
               headers["Idempotency-Key"] = idempotency_key
          return headers

     def _to_result(self, data: dict) -> GatewayResult:
          return GatewayResult(
               success=True,
               provider=self.provider,
               order_id=data.get("orderId"),
               payment_key=data.get("paymentKey"),
               amount=data.get("totalAmount"),
               status=STATUS_MAP.get(data.get("status"), PaymentStatus.PENDING.value),
               cancelled_amount=_cancelled_amount(data),
               method=data.get("method"),
               approved_at=to_naive_utc(data.get("approvedAt")),
               receipt_url=(data.get("receipt") or {}).get("url"),
               raw=data,
          )

     def _declined(self, response, data: dict) -> GatewayResult:
          return GatewayResult.failure(
               self.provider,
               data.get("message") or response.text or f"HTTP {response.status_code}",
               code=data.get("code") or f"HTTP_{response.status_code}",
               raw=data,
          )

     @fails_on_unsent_request
     def confirm(self, payment_key: str, order_id: str, amount: int) -> GatewayResult:
          # Idempotency-Key makes a repeated confirm return the first answer
          response = self._send(
               "POST",
               f"{self.api_url}/payments/confirm",
               json={"paymentKey": payment_key, "orderId": order_id, "amount": amount},
               headers=self._headers(idempotency_key=order_id),
          )
          data = self._parse(response)
          if not response.ok:
               return self._declined(response, data)
          return self._to_result(data)

     @fails_on_unsent_request
     def cancel(self, payment_key: str, reason: str, amount: Optional[int] = None) -> GatewayResult:
          body = {"cancelReason": reason}
          if amount:
               body["cancelAmount"] = amount
          response = self._send(
               "POST",
               f"{self.api_url}/payments/{payment_key}/cancel",
               json=body,
               headers=self._headers(idempotency_key=f"{payment_key}-cancel-{amount or 'full'}"),
          )
          data = self._parse(response)
          if not response.ok:
               return self._declined(response, data)
          result = self._to_result(data)
          cancels = data.get("cancels") or []
          if cancels:
               result.amount = cancels[-1].get("cancelAmount", result.amount)
          return result

     @fails_on_unsent_request
     def query(self, payment_key: str) -> GatewayResult:
          response = self._send(
               "GET",
               f"{self.api_url}/payments/{payment_key}",
               headers=self._headers(),
          )
          data = self._parse(response)
          if not response.ok:
               return self._declined(response, data)
          return self._to_result(data)

     def launch_credentials(self) -> Dict[str, str]:
          return {"clientKey": self.client_key}
