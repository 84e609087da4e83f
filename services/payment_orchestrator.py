# services/payment_orchestrator.py
"""
Payment Orchestrator - prepare / confirm / cancel for course purchases.

Flow:
1. prepare: validate course, user and input, insert a pending record whose
   amount comes from the course catalog, return what the client needs to open
   the gateway checkout.
2. confirm: claim the pending record (compare-and-swap), check amount and
   provider, settle through the gateway, commit paid, then enroll.
3. cancel: claim the paid record, cancel through the gateway, commit
   cancelled / refunded.

All coordination lives in the database; an instance holds no mutable state,
so any number of instances may serve requests side by side.

Enrollment runs after the paid status is committed and its failure never
undoes it. Paid orders left without enrollment, and pending orders whose
gateway outcome is unknown, are picked up by services/reconciliation_service.py.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from database import session_scope
from gateways.base import GatewayAdapter, GatewayResult, GatewayTimeoutError
from models import Course, PaymentRecord, PaymentStatus, User
from models.payment import DEFAULT_METHOD
from services import ledger_service
from services.enrollment_service import trigger_enrollment
from services.errors import (
     AlreadyProcessed,
     AlreadyPurchased,
     AmountMismatch,
     CourseNotFound,
     Forbidden,
     GatewayDeclined,
     GatewayTimeout,
     InvalidRequest,
     NotCancellable,
     NotPayable,
     OrderNotFound,
     PaymentError,
     PaymentInProgress,
     PersistenceError,
     ProviderMismatch,
     UserNotFound,
)
from services.order_id import generate_order_id

logger = logging.getLogger(__name__)


@dataclass
class LaunchDescriptor:
     """Everything the client needs to hand off to the gateway's checkout."""
     order_id: str
     order_name: str
     amount: int
     provider: str
     method: str
     customer_name: str
     customer_email: str
     success_url: str
     fail_url: str
     provider_credentials: Dict[str, str] = field(default_factory=dict)


def _blank(value) -> bool:
     return value is None or (isinstance(value, str) and not value.strip())


def _missing_fields(fields: Mapping[str, object]) -> List[str]:
     return [f"{name} is required" for name, value in fields.items() if _blank(value)]


class PaymentOrchestrator:
     """
     Drives PaymentRecord through pending -> paid/failed -> cancelled/refunded.

     Args:
          session_factory: sessionmaker bound to the ledger database
          gateways: adapter per provider name
          default_success_url / default_fail_url: used when the client sends none
          order_id_factory: order id generator
     """

     def __init__(
          self,
          session_factory: sessionmaker,
          gateways: Mapping[str, GatewayAdapter],
          *,
          default_success_url: str = "",
          default_fail_url: str = "",
          order_id_factory: Callable[[], str] = generate_order_id,
     ):
          self.session_factory = session_factory
          self.gateways = dict(gateways)
          self.default_success_url = default_success_url
          self.default_fail_url = default_fail_url
          self.order_id_factory = order_id_factory

     # ------------------------------------------------------------------
     # Prepare
     # ------------------------------------------------------------------

     def prepare(
          self,
          *,
          user_id: Optional[str],
          course_id: Optional[str],
          customer_name: Optional[str],
          customer_email: Optional[str],
          provider: Optional[str],
          method: Optional[str] = None,
          success_url: Optional[str] = None,
          fail_url: Optional[str] = None,
     ) -> LaunchDescriptor:
          """
          Open a new order for (user, course).

          The amount is always the catalog price; nothing the caller sends can
          change it. Safe to retry: each call allocates a new order id.

          Raises:
               InvalidRequest, CourseNotFound, NotPayable, UserNotFound,
               AlreadyPurchased, PersistenceError
          """
          errors = _missing_fields({
               "courseId": course_id,
               "userId": user_id,
               "customerName": customer_name,
               "customerEmail": customer_email,
               "provider": provider,
          })
          if not _blank(customer_email) and "@" not in customer_email:
               errors.append("customerEmail is not a valid email address")
          if not _blank(provider) and provider not in self.gateways:
               errors.append(
                    f"provider '{provider}' is not supported (available: {', '.join(sorted(self.gateways)) or 'none'})"
               )
          if errors:
               raise InvalidRequest("Payment request is invalid", details=errors)

          method = method or DEFAULT_METHOD
          success_url = success_url or self.default_success_url
          fail_url = fail_url or self.default_fail_url

          try:
               with session_scope(self.session_factory) as db:
                    course = db.get(Course, course_id)
                    if course is None:
                         raise CourseNotFound(f"Course {course_id} does not exist")
                    if not course.is_payable:
                         raise NotPayable(f"Course {course_id} cannot be purchased")

                    if db.get(User, user_id) is None:
                         raise UserNotFound(f"User {user_id} does not exist")

                    if ledger_service.find_paid_order(db, user_id, course_id) is not None:
                         raise AlreadyPurchased(f"Course {course_id} is already purchased")

                    order_id = self.order_id_factory()
                    record = ledger_service.create_pending_record(
                         db,
                         order_id=order_id,
                         user_id=user_id,
                         course_id=course_id,
                         order_name=course.title,
                         amount=course.price,
                         provider=provider,
                         method=method,
                         customer_name=customer_name,
                         customer_email=customer_email,
                         success_url=success_url,
                         fail_url=fail_url,
                    )
                    amount = record.declared_amount
                    order_name = record.order_name
          except PaymentError:
               raise
          except SQLAlchemyError as exc:
               logger.exception("Could not record order for user %s course %s", user_id, course_id)
               raise PersistenceError("Order could not be recorded, retry prepare", details=[str(exc.__class__.__name__)]) from exc

          logger.info("Prepared order %s: course=%s amount=%s provider=%s", order_id, course_id, amount, provider)
          return LaunchDescriptor(
               order_id=order_id,
               order_name=order_name,
               amount=amount,
               provider=provider,
               method=method,
               customer_name=customer_name,
               customer_email=customer_email,
               success_url=success_url,
               fail_url=fail_url,
               provider_credentials=self.gateways[provider].launch_credentials(),
          )

     # ------------------------------------------------------------------
     # Confirm
     # ------------------------------------------------------------------

     def confirm(
          self,
          *,
          order_id: Optional[str],
          payment_key: Optional[str],
          amount: Optional[int],
          provider: Optional[str],
          user_id: Optional[str] = None,
     ) -> PaymentRecord:
          """
          Settle a pending order through its gateway.

          Only one request can hold the claim on an order, and on its
          (user, course) pair, at a time; every other concurrent or repeated
          call is rejected without reaching the gateway.

          Raises:
               InvalidRequest, OrderNotFound, Forbidden, AlreadyProcessed,
               AlreadyPurchased, PaymentInProgress, AmountMismatch,
               ProviderMismatch, GatewayDeclined, GatewayTimeout, PersistenceError
          """
          errors = _missing_fields({
               "orderId": order_id,
               "paymentKey": payment_key,
               "amount": amount,
               "provider": provider,
          })
          if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int)):
               errors.append("amount must be an integer")
          if errors:
               raise InvalidRequest("Confirm request is invalid", details=errors)

          token = str(uuid.uuid4())
          record = self._claim_for_confirm(order_id, payment_key, token, user_id)
          declared = record.declared_amount

          if amount != declared:
               reason = f"Amount mismatch: declared {declared}, claimed {amount}"
               self._fail(order_id, token, reason)
               raise AmountMismatch(reason)

          if provider != record.provider:
               reason = f"Provider mismatch: order uses {record.provider}, request sent {provider}"
               self._fail(order_id, token, reason)
               raise ProviderMismatch(reason)

          adapter = self._adapter_or_release(record, token)
          try:
               result = adapter.confirm(payment_key, order_id, declared)
          except GatewayTimeoutError as exc:
               logger.error("Confirm of order %s: gateway outcome unknown (%s); left pending", order_id, exc.message)
               self._release(order_id, token, f"confirm outcome unknown: {exc.message}")
               raise GatewayTimeout(
                    "Gateway did not answer; the order stays pending until reconciled",
                    details=[exc.message],
               ) from exc
          except Exception as exc:
               logger.exception("Confirm of order %s: adapter error; left pending", order_id)
               self._release(order_id, token, f"confirm outcome unknown: {exc}")
               raise GatewayTimeout(
                    "Gateway call failed with an unknown outcome; the order stays pending until reconciled",
               ) from exc

          self._apply_confirmation(record, token, payment_key, result)

          self._enroll(record)
          return self.get_order(order_id)

     def _claim_for_confirm(self, order_id: str, payment_key: str, token: str, user_id: Optional[str]) -> PaymentRecord:
          try:
               with session_scope(self.session_factory) as db:
                    record = ledger_service.get_by_order_id(db, order_id)
                    if record is None:
                         raise OrderNotFound(f"Order {order_id} does not exist")
                    self._check_owner(record, user_id)
                    if record.status != PaymentStatus.PENDING:
                         raise AlreadyProcessed(f"Order {order_id} is already {record.status.value}")
                    if ledger_service.find_paid_order(db, record.user_id, record.course_id) is not None:
                         raise AlreadyPurchased(f"Course {record.course_id} is already purchased")

                    if not ledger_service.claim_for_confirm(db, record, token, payment_key):
                         raise self._confirm_rejection(db, order_id)
          except PaymentError:
               raise
          except SQLAlchemyError as exc:
               logger.exception("Could not claim order %s for confirm", order_id)
               raise PersistenceError("Order could not be locked for confirmation, retry") from exc
          logger.info("Claimed order %s for confirm", order_id)
          return record

     def _confirm_rejection(self, db: Session, order_id: str) -> PaymentError:
          """Explain why the claim was lost, from the row as it is now."""
          current = ledger_service.reload(db, order_id)
          if current.status != PaymentStatus.PENDING:
               return AlreadyProcessed(f"Order {order_id} is already {current.status.value}")
          if ledger_service.find_paid_order(db, current.user_id, current.course_id) is not None:
               return AlreadyPurchased(f"Course {current.course_id} is already purchased")
          return PaymentInProgress(f"A payment for order {order_id} or its course is already being processed")

     def _apply_confirmation(self, record: PaymentRecord, token: str, payment_key: str, result: GatewayResult) -> None:
          order_id = record.order_id
          declared = record.declared_amount

          if not result.success:
               logger.warning("Gateway declined order %s: %s", order_id, result.diagnostic)
               self._fail(order_id, token, result.diagnostic)
               raise GatewayDeclined("Payment was declined by the gateway", details=[result.diagnostic])

          if result.status == PaymentStatus.PENDING.value:
               self._release(order_id, token, "gateway reports the payment is not settled yet")
               raise GatewayTimeout("Payment is not settled yet; the order stays pending until reconciled")

          if result.status != PaymentStatus.PAID.value:
               reason = f"Gateway reported status {result.status}"
               self._fail(order_id, token, reason)
               raise GatewayDeclined("Payment was not completed by the gateway", details=[reason])

          if result.amount is not None and result.amount != declared:
               reason = f"Amount mismatch: declared {declared}, gateway settled {result.amount}"
               logger.error("Order %s: %s; operator refund required", order_id, reason)
               self._fail(order_id, token, reason)
               raise AmountMismatch(reason)

          try:
               with session_scope(self.session_factory) as db:
                    settled = ledger_service.mark_paid(
                         db,
                         order_id,
                         token,
                         payment_key=result.payment_key or payment_key,
                         method=result.method,
                         approved_at=result.approved_at,
                         receipt_url=result.receipt_url,
                    )
          except SQLAlchemyError as exc:
               logger.exception("Order %s settled at gateway but not recorded; reconciliation will settle it", order_id)
               raise PersistenceError("Payment was collected but could not be recorded yet") from exc
          if not settled:
               logger.error("Order %s settled at gateway but its claim was lost", order_id)
               raise PersistenceError("Payment was collected but could not be recorded yet")
          logger.info("Order %s paid (payment key %s)", order_id, result.payment_key or payment_key)

     # ------------------------------------------------------------------
     # Cancel
     # ------------------------------------------------------------------

     def cancel(
          self,
          *,
          reason: Optional[str],
          order_id: Optional[str] = None,
          payment_key: Optional[str] = None,
          amount: Optional[int] = None,
          user_id: Optional[str] = None,
     ) -> PaymentRecord:
          """
          Cancel a paid order in full, or refund part of it.

          The record changes only after the gateway confirms the money moved;
          on any gateway failure it stays paid.

          Raises:
               InvalidRequest, OrderNotFound, Forbidden, NotCancellable,
               PaymentInProgress, GatewayDeclined, GatewayTimeout, PersistenceError
          """
          errors = []
          if _blank(order_id) and _blank(payment_key):
               errors.append("orderId or paymentKey is required")
          if _blank(reason):
               errors.append("reason is required")
          if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int)):
               errors.append("amount must be an integer")
          if errors:
               raise InvalidRequest("Cancel request is invalid", details=errors)

          token = str(uuid.uuid4())
          record = self._claim_for_cancel(order_id, payment_key, amount, token, user_id)
          order_id = record.order_id
          declared = record.declared_amount
          full = amount is None or amount == declared
          refund_amount = declared if full else amount

          adapter = self._adapter_or_release(record, token)
          try:
               result = adapter.cancel(record.provider_transaction_id, reason, None if full else amount)
          except GatewayTimeoutError as exc:
               logger.error("Cancel of order %s: gateway outcome unknown (%s); still paid", order_id, exc.message)
               self._release(order_id, token, f"cancel outcome unknown: {exc.message}")
               raise GatewayTimeout(
                    "Gateway did not answer; the order is still paid. Check the gateway before retrying",
                    details=[exc.message],
               ) from exc
          except Exception as exc:
               logger.exception("Cancel of order %s: adapter error; still paid", order_id)
               self._release(order_id, token, f"cancel outcome unknown: {exc}")
               raise GatewayTimeout("Gateway call failed; the order is still paid") from exc

          if not result.success:
               logger.warning("Gateway refused cancel of order %s: %s", order_id, result.diagnostic)
               self._release(order_id, token, result.diagnostic)
               raise GatewayDeclined(
                    "Gateway refused the cancellation; the order is still paid",
                    details=[result.diagnostic],
                    retryable=True,
               )

          try:
               with session_scope(self.session_factory) as db:
                    done = ledger_service.mark_cancelled(
                         db, order_id, token, reason=reason, amount=refund_amount, full=full,
                    )
          except SQLAlchemyError as exc:
               logger.exception("Order %s cancelled at gateway but not recorded", order_id)
               raise PersistenceError("Cancellation went through at the gateway but could not be recorded") from exc
          if not done:
               logger.error("Order %s cancelled at gateway but its claim was lost", order_id)
               raise PersistenceError("Cancellation went through at the gateway but could not be recorded")

          logger.info(
               "Order %s %s (amount %s): %s",
               order_id, "cancelled" if full else "refunded", refund_amount, reason,
          )
          return self.get_order(order_id)

     def _claim_for_cancel(
          self,
          order_id: Optional[str],
          payment_key: Optional[str],
          amount: Optional[int],
          token: str,
          user_id: Optional[str],
     ) -> PaymentRecord:
          try:
               with session_scope(self.session_factory) as db:
                    if not _blank(order_id):
                         record = ledger_service.get_by_order_id(db, order_id)
                    else:
                         record = ledger_service.get_by_payment_key(db, payment_key)
                    if record is None:
                         raise OrderNotFound(f"Order {order_id or payment_key} does not exist")
                    self._check_owner(record, user_id)
                    if record.status != PaymentStatus.PAID:
                         raise NotCancellable(
                              f"Order {record.order_id} is {record.status.value}; only paid orders can be cancelled"
                         )
                    if amount is not None and not 0 < amount <= record.declared_amount:
                         raise InvalidRequest(
                              "Cancel request is invalid",
                              details=[f"amount must be between 1 and {record.declared_amount}"],
                         )
                    if not ledger_service.claim_for_cancel(db, record.order_id, token):
                         current = ledger_service.reload(db, record.order_id)
                         if current.status != PaymentStatus.PAID:
                              raise NotCancellable(f"Order {record.order_id} is {current.status.value}")
                         raise PaymentInProgress(f"Order {record.order_id} is already being processed")
          except PaymentError:
               raise
          except SQLAlchemyError as exc:
               logger.exception("Could not claim order %s for cancel", order_id or payment_key)
               raise PersistenceError("Order could not be locked for cancellation, retry") from exc
          return record

     # ------------------------------------------------------------------
     # Queries
     # ------------------------------------------------------------------

     def get_order(self, order_id: str, user_id: Optional[str] = None) -> PaymentRecord:
          with session_scope(self.session_factory) as db:
               record = ledger_service.get_by_order_id(db, order_id)
               if record is None:
                    raise OrderNotFound(f"Order {order_id} does not exist")
               self._check_owner(record, user_id)
               return record

     def query_gateway(self, order_id: str) -> GatewayResult:
          """Provider-side state of the order's payment."""
          record = self.get_order(order_id)
          payment_key = record.provider_transaction_id or record.attempted_payment_key
          if not payment_key:
               raise InvalidRequest(f"Order {order_id} has not been submitted to a gateway")
          adapter = self.gateways.get(record.provider)
          if adapter is None:
               raise GatewayDeclined(f"Gateway {record.provider} is not configured", retryable=True)
          try:
               return adapter.query(payment_key)
          except GatewayTimeoutError as exc:
               raise GatewayTimeout("Gateway did not answer", details=[exc.message]) from exc

     # ------------------------------------------------------------------
     # Helpers
     # ------------------------------------------------------------------

     @staticmethod
     def _check_owner(record: PaymentRecord, user_id: Optional[str]) -> None:
          if user_id is not None and str(record.user_id) != str(user_id):
               raise Forbidden(f"Order {record.order_id} belongs to another user")

     def _adapter_or_release(self, record: PaymentRecord, token: str) -> GatewayAdapter:
          adapter = self.gateways.get(record.provider)
          if adapter is None:
               self._release(record.order_id, token, f"gateway {record.provider} is not configured")
               raise GatewayDeclined(f"Gateway {record.provider} is not configured", retryable=True)
          return adapter

     def _fail(self, order_id: str, token: str, reason: str) -> None:
          try:
               with session_scope(self.session_factory) as db:
                    failed = ledger_service.mark_failed(db, order_id, token, reason)
          except SQLAlchemyError as exc:
               logger.exception("Could not mark order %s failed", order_id)
               raise PersistenceError("Order failure could not be recorded") from exc
          if failed:
               logger.info("Order %s failed: %s", order_id, reason)
          else:
               logger.warning("Order %s: claim lost before it could be marked failed", order_id)

     def _release(self, order_id: str, token: str, last_error: str) -> None:
          try:
               with session_scope(self.session_factory) as db:
                    ledger_service.release_claim(db, order_id, token, last_error=last_error)
          except SQLAlchemyError:
               # once stale, the claim is taken over by PaymentReconciler
               logger.exception("Could not release claim on order %s", order_id)

     def _enroll(self, record: PaymentRecord) -> bool:
          return trigger_enrollment(self.session_factory, record.user_id, record.course_id, record.order_id)
