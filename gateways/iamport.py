# gateways/iamport.py
"""
Iamport (PortOne v1) adapter.

The REST key/secret are exchanged for a short-lived access token that is
cached until shortly before it expires. Payments are authorized entirely on
the client, so confirm is a verification: the server fetches the payment and
checks it belongs to our order and is paid.
"""
import logging
import threading
import time
from typing import Dict, Optional

from models.payment import PaymentProvider, PaymentStatus
from utils.time import to_naive_utc
from .base import (
     GatewayAdapter,
     GatewayRequestFailed,
     GatewayResult,
     fails_on_unsent_request,
     DEFAULT_TIMEOUT,
)

logger = logging.getLogger(__name__)

IAMPORT_API_URL = "https://api.iamport.kr"
TOKEN_REFRESH_MARGIN_SECONDS = 60


class IamportGateway(GatewayAdapter):
     provider = PaymentProvider.IAMPORT.value

     def __init__(
          self,
          imp_key: str,
          imp_secret: str,
          user_code: str = "",
          api_url: str = IAMPORT_API_URL,
          session=None,
          timeout=DEFAULT_TIMEOUT,
     ):
          super().__init__(session=session, timeout=timeout)
          self.imp_key = imp_key
          self.imp_secret = imp_secret
          self.user_code = user_code
          self.api_url = api_url.rstrip("/")
          self._token: Optional[str] = None
          self._token_expires_at = 0.0
          self._token_lock = threading.Lock()

     def _access_token(self) -> str:
          with self._token_lock:
               if self._token and time.time() < self._token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
                    return self._token

               response = self._send(
                    "POST",
                    f"{self.api_url}/users/getToken",
                    json={"imp_key": self.imp_key, "imp_secret": self.imp_secret},
                    headers={"Content-Type": "application/json"},
               )
               data = self._parse(response)
               if data.get("code") != 0 or not data.get("response"):
                    raise GatewayRequestFailed(
                         data.get("message") or "Iamport authentication failed",
                         code="AUTH_FAILED",
                    )
               token_data = data["response"]
               self._token = token_data["access_token"]
               # expired_at is absolute unix time on the provider's clock
               ttl = token_data.get("expired_at", 0) - token_data.get("now", time.time())
               self._token_expires_at = time.time() + max(ttl, 0)
               logger.info("Obtained Iamport access token (ttl=%ss)", int(ttl))
               return self._token

     def _auth_headers(self) -> Dict[str, str]:
          return {
               "Content-Type": "application/json",
               "Authorization": f"Bearer {self._access_token()}",
          }

     def _declined(self, data: dict, fallback: str) -> GatewayResult:
          return GatewayResult.failure(
               self.provider,
               data.get("message") or fallback,
               code=str(data.get("code")) if data.get("code") is not None else None,
               raw=data,
          )

     def _to_result(self, payment: dict) -> GatewayResult:
          return GatewayResult(
               success=True,
               provider=self.provider,
               order_id=payment.get("merchant_uid"),
               payment_key=payment.get("imp_uid"),
               amount=payment.get("amount"),
               status=self._map_status(payment),
               cancelled_amount=payment.get("cancel_amount"),
               method=payment.get("pay_method"),
               approved_at=to_naive_utc(payment.get("paid_at")),
               receipt_url=payment.get("receipt_url"),
               raw=payment,
          )

     @staticmethod
     def _map_status(payment: dict) -> str:
          status = payment.get("status")
          cancelled = payment.get("cancel_amount") or 0
          if status == "paid":
               # a partial cancel keeps status "paid" and only raises cancel_amount
               if cancelled > 0:
                    return PaymentStatus.REFUNDED.value
               return PaymentStatus.PAID.value
          if status == "cancelled":
               if cancelled and cancelled < (payment.get("amount") or 0):
                    return PaymentStatus.REFUNDED.value
               return PaymentStatus.CANCELLED.value
          if status == "failed":
               return PaymentStatus.FAILED.value
          return PaymentStatus.PENDING.value

     def _fetch_payment(self, imp_uid: str):
          response = self._send(
               "GET",
               f"{self.api_url}/payments/{imp_uid}",
               headers=self._auth_headers(),
          )
          data = self._parse(response)
          if data.get("code") != 0 or not data.get("response"):
               return None, self._declined(data, f"payment {imp_uid} not found")
          return data["response"], None

     @fails_on_unsent_request
     def confirm(self, payment_key: str, order_id: str, amount: int) -> GatewayResult:
          payment, declined = self._fetch_payment(payment_key)
          if declined:
               return declined
          if payment.get("merchant_uid") != order_id:
               return GatewayResult.failure(
                    self.provider,
                    f"payment {payment_key} belongs to order {payment.get('merchant_uid')}, not {order_id}",
                    code="ORDER_MISMATCH",
                    raw=payment,
               )
          result = self._to_result(payment)
          if result.status in (PaymentStatus.PAID.value, PaymentStatus.PENDING.value):
               # amount is checked against the ledger by the caller
               return result
          return GatewayResult.failure(
               self.provider,
               payment.get("fail_reason") or f"payment status is {result.status}",
               code=(result.status or "").upper() or None,
               raw=payment,
          )

     @fails_on_unsent_request
     def cancel(self, payment_key: str, reason: str, amount: Optional[int] = None) -> GatewayResult:
          body = {"imp_uid": payment_key, "reason": reason}
          if amount:
               body["amount"] = amount
          response = self._send(
               "POST",
               f"{self.api_url}/payments/cancel",
               json=body,
               headers=self._auth_headers(),
          )
          data = self._parse(response)
          if data.get("code") != 0 or not data.get("response"):
               return self._declined(data, "cancel rejected")
          payment = data["response"]
          result = self._to_result(payment)
          result.amount = amount or payment.get("cancel_amount") or payment.get("amount")
          return result

     @fails_on_unsent_request
     def query(self, payment_key: str) -> GatewayResult:
          payment, declined = self._fetch_payment(payment_key)
          if declined:
               return declined
          return self._to_result(payment)

     def launch_credentials(self) -> Dict[str, str]:
          return {"userCode": self.user_code}
