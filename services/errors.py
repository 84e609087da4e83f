# services/errors.py
"""
Error taxonomy of the payment engine.

Every failure the orchestrator reports is a PaymentError carrying a stable
code, the HTTP status the API should answer with, and whether the caller may
retry the same request.
"""
from typing import List, Optional


class PaymentError(Exception):
     code = "PAYMENT_ERROR"
     status_code = 500
     retryable = False

     def __init__(self, message: str, details: Optional[List[str]] = None, retryable: Optional[bool] = None):
          super().__init__(message)
          self.message = message
          self.details = list(details or [])
          if retryable is not None:
               self.retryable = retryable

     def to_dict(self) -> dict:
          body = {"error": self.message, "code": self.code, "retryable": self.retryable}
          if self.details:
               body["details"] = self.details
          return body


# Validation errors: detected before any gateway call, no ledger mutation

class InvalidRequest(PaymentError):
     code = "INVALID_REQUEST"
     status_code = 400


class CourseNotFound(PaymentError):
     code = "COURSE_NOT_FOUND"
     status_code = 404


class UserNotFound(PaymentError):
     code = "USER_NOT_FOUND"
     status_code = 404


class NotPayable(PaymentError):
     code = "NOT_PAYABLE"
     status_code = 400


class AlreadyPurchased(PaymentError):
     code = "ALREADY_PURCHASED"
     status_code = 400


class Forbidden(PaymentError):
     code = "FORBIDDEN"
     status_code = 403


# Lookup / idempotency

class OrderNotFound(PaymentError):
     code = "ORDER_NOT_FOUND"
     status_code = 404


class AlreadyProcessed(PaymentError):
     """The order already left pending; fetch its status instead of retrying."""
     code = "ALREADY_PROCESSED"
     status_code = 400


class NotCancellable(PaymentError):
     code = "NOT_CANCELLABLE"
     status_code = 400


class PaymentInProgress(PaymentError):
     """Another request holds the claim on this order or on its (user, course) pair."""
     code = "PAYMENT_IN_PROGRESS"
     status_code = 409
     retryable = True


# Integrity violations: always recorded as failed

class AmountMismatch(PaymentError):
     code = "AMOUNT_MISMATCH"
     status_code = 400


class ProviderMismatch(PaymentError):
     code = "PROVIDER_MISMATCH"
     status_code = 400


# Gateway failures

class GatewayDeclined(PaymentError):
     code = "GATEWAY_DECLINED"
     status_code = 500


class GatewayTimeout(PaymentError):
     """Gateway outcome unknown; the ledger was left as it was."""
     code = "GATEWAY_TIMEOUT"
     status_code = 500
     retryable = True


# Persistence

class PersistenceError(PaymentError):
     code = "PERSISTENCE_ERROR"
     status_code = 500
     retryable = True
