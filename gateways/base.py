# gateways/base.py
"""
Provider-neutral gateway contract.

Each adapter turns confirm / cancel / query into its provider's REST calls
and normalizes the answer into a GatewayResult. Adapters never retry: a retry
could settle twice, so retries go back through the orchestrator's claim.

Outcome classes:
- GatewayResult(success=True)  the provider accepted the call
- GatewayResult(success=False) the provider declined, or the request provably
                               never reached it (connect timeout, auth failure)
- GatewayTimeoutError          the request may have reached the provider and
                               we do not know what happened
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
from typing import Any, Dict, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT: Tuple[float, float] = (5.0, 30.0)


class GatewayTimeoutError(Exception):
     """The provider-side outcome is unknown (read timeout, dropped connection, 5xx)."""

     def __init__(self, provider: str, message: str):
          super().__init__(message)
          self.provider = provider
          self.message = message


class GatewayRequestFailed(Exception):
     """The request provably did not move money (not sent, or rejected before processing)."""

     def __init__(self, message: str, code: str = "REQUEST_FAILED"):
          super().__init__(message)
          self.message = message
          self.code = code


@dataclass
class GatewayResult:
     """Normalized answer of a gateway call."""
     success: bool
     provider: str
     order_id: Optional[str] = None
     payment_key: Optional[str] = None
     amount: Optional[int] = None
     # provider-side state mapped onto PaymentStatus values
     status: Optional[str] = None
     # total refunded so far, when the provider reports it
     cancelled_amount: Optional[int] = None
     method: Optional[str] = None
     approved_at: Optional[datetime] = None
     receipt_url: Optional[str] = None
     reason: Optional[str] = None
     code: Optional[str] = None
     raw: Dict[str, Any] = field(default_factory=dict)

     @classmethod
     def failure(cls, provider: str, reason: str, code: Optional[str] = None, raw: Optional[dict] = None) -> "GatewayResult":
          return cls(success=False, provider=provider, reason=reason, code=code, raw=raw or {})

     @property
     def diagnostic(self) -> str:
          """Provider code and message, as stored in fail_reason."""
          if self.code:
               return f"[{self.code}] {self.reason or ''}".strip()
          return self.reason or "unknown gateway error"


def fails_on_unsent_request(func):
     """Turn GatewayRequestFailed raised inside an adapter call into a failure result."""
     @wraps(func)
     def wrapper(self, *args, **kwargs):
          try:
               return func(self, *args, **kwargs)
          except GatewayRequestFailed as exc:
               logger.warning("%s %s failed before reaching the provider: %s", self.provider, func.__name__, exc.message)
               return GatewayResult.failure(self.provider, exc.message, code=exc.code)
     return wrapper


class GatewayAdapter(ABC):
     """One implementation per payment provider."""

     provider: str = ""

     def __init__(self, session: Optional[requests.Session] = None, timeout: Tuple[float, float] = DEFAULT_TIMEOUT):
          self.session = session or requests.Session()
          self.timeout = timeout

     @abstractmethod
     def confirm(self, payment_key: str, order_id: str, amount: int) -> GatewayResult:
          """Settle or verify a client-initiated payment for exactly `amount`."""

     @abstractmethod
     def cancel(self, payment_key: str, reason: str, amount: Optional[int] = None) -> GatewayResult:
          """Cancel the payment in full, or refund `amount` of it."""

     @abstractmethod
     def query(self, payment_key: str) -> GatewayResult:
          """Current provider-side state of the payment."""

     @abstractmethod
     def launch_credentials(self) -> Dict[str, str]:
          """Public values the client needs to open the provider's checkout."""

     def _send(self, method: str, url: str, **kwargs) -> requests.Response:
          """
          Issue one HTTP request with the adapter's timeout.

          A connect timeout means nothing was sent; any other transport error
          leaves the outcome unknown.
          """
          try:
               return self.session.request(method, url, timeout=self.timeout, **kwargs)
          except requests.ConnectTimeout as exc:
               raise GatewayRequestFailed(f"connect timeout: {exc}", code="CONNECT_TIMEOUT") from exc
          except requests.Timeout as exc:
               raise GatewayTimeoutError(self.provider, f"read timeout: {exc}") from exc
          except requests.RequestException as exc:
               raise GatewayTimeoutError(self.provider, f"transport error: {exc}") from exc

     def _parse(self, response: requests.Response) -> dict:
          """JSON body as a dict. A 5xx without a provider error body is an unknown outcome."""
          try:
               data = response.json()
          except ValueError:
               data = {}
          if not isinstance(data, dict):
               data = {}
          if response.status_code >= 500 and "code" not in data:
               raise GatewayTimeoutError(
                    self.provider,
                    f"HTTP {response.status_code} from gateway, outcome unknown",
               )
          return data
