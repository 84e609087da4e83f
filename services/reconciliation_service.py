# services/reconciliation_service.py
"""
Reconciliation sweep - the out-of-band half of the payment saga.

1. Pending orders whose confirm outcome is unknown (gateway timeout, crashed
   worker holding a stale claim) are re-claimed and resolved by asking the
   gateway for the payment's current state.
2. Paid orders still held by a cancel claim that was never released are
   taken over once the claim is stale. A cancel or refund the gateway reports
   is recorded; otherwise the claim is dropped and the order stays paid.
3. Paid orders without an approved registration get the enrollment retried.

Run periodically, e.g. `python reconcile.py` from cron.
"""
import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Mapping

from sqlalchemy.orm import sessionmaker

from database import session_scope
from gateways.base import GatewayAdapter, GatewayTimeoutError
from models import PaymentRecord, PaymentStatus
from services import ledger_service
from services.enrollment_service import trigger_enrollment
from utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
     resolved_paid: int = 0
     resolved_failed: int = 0
     still_pending: int = 0
     resolved_cancelled: int = 0
     released_claims: int = 0
     enrollments_retried: int = 0
     errors: int = 0

     def as_dict(self) -> dict:
          return asdict(self)


class PaymentReconciler:
     """
     Args:
          session_factory: sessionmaker bound to the ledger database
          gateways: adapter per provider name
          stale_after: age of a claim, or of an unclaimed unresolved attempt,
               after which the order is reconciled
          batch_size: max orders handled per step in one run
     """

     def __init__(
          self,
          session_factory: sessionmaker,
          gateways: Mapping[str, GatewayAdapter],
          stale_after: timedelta = timedelta(minutes=15),
          batch_size: int = 100,
     ):
          self.session_factory = session_factory
          self.gateways = dict(gateways)
          self.stale_after = stale_after
          self.batch_size = batch_size

     def run(self) -> ReconciliationReport:
          report = ReconciliationReport()
          self.resolve_pending(report)
          self.resolve_stale_cancels(report)
          self.retry_enrollments(report)
          logger.info("Reconciliation finished: %s", report.as_dict())
          return report

     # ------------------------------------------------------------------
     # Unresolved pending orders
     # ------------------------------------------------------------------

     def resolve_pending(self, report: ReconciliationReport) -> None:
          stale_before = utcnow() - self.stale_after
          with session_scope(self.session_factory) as db:
               order_ids = [
                    r.order_id
                    for r in ledger_service.list_reconcilable_pending(db, stale_before, self.batch_size)
               ]
          for order_id in order_ids:
               try:
                    self._resolve_one(order_id, stale_before, report)
               except Exception:
                    logger.exception("Reconciliation of order %s failed", order_id)
                    report.errors += 1

     def _resolve_one(self, order_id: str, stale_before, report: ReconciliationReport) -> None:
          token = str(uuid.uuid4())
          with session_scope(self.session_factory) as db:
               if not ledger_service.claim_for_reconcile(db, order_id, token, stale_before):
                    # someone else is working on it, or it was resolved meanwhile
                    return
               record = ledger_service.reload(db, order_id)

          adapter = self.gateways.get(record.provider)
          if adapter is None:
               self._release(order_id, token, f"gateway {record.provider} is not configured")
               report.errors += 1
               return

          try:
               result = adapter.query(record.attempted_payment_key)
          except GatewayTimeoutError as exc:
               self._release(order_id, token, f"reconcile query outcome unknown: {exc.message}")
               report.still_pending += 1
               return

          if not result.success:
               logger.warning("Order %s: gateway query declined: %s", order_id, result.diagnostic)
               self._release(order_id, token, f"reconcile query declined: {result.diagnostic}")
               report.still_pending += 1
               return

          if result.status == PaymentStatus.PAID.value:
               self._settle_paid(record, token, result, report)
          elif result.status in (
               PaymentStatus.FAILED.value,
               PaymentStatus.CANCELLED.value,
               PaymentStatus.REFUNDED.value,
          ):
               self._fail(order_id, token, f"Gateway reports payment {result.status}", report)
          else:
               self._release(order_id, token, "gateway reports the payment is not settled yet")
               report.still_pending += 1

     def _settle_paid(self, record: PaymentRecord, token: str, result, report: ReconciliationReport) -> None:
          order_id = record.order_id
          if result.order_id and result.order_id != order_id:
               logger.error("Order %s: gateway payment belongs to order %s", order_id, result.order_id)
               self._release(order_id, token, f"gateway payment belongs to order {result.order_id}")
               report.errors += 1
               return

          if result.amount is not None and result.amount != record.declared_amount:
               reason = f"Amount mismatch: declared {record.declared_amount}, gateway settled {result.amount}"
               logger.error("Order %s: %s; operator refund required", order_id, reason)
               self._fail(order_id, token, reason, report)
               return

          with session_scope(self.session_factory) as db:
               if ledger_service.find_paid_order(db, record.user_id, record.course_id) is not None:
                    duplicate = True
               else:
                    duplicate = False
                    ledger_service.mark_paid(
                         db,
                         order_id,
                         token,
                         payment_key=result.payment_key or record.attempted_payment_key,
                         method=result.method,
                         approved_at=result.approved_at,
                         receipt_url=result.receipt_url,
                    )
          if duplicate:
               # a second collected payment for an owned course; leave it for an operator
               logger.error("Order %s was paid at the gateway but the course is already owned", order_id)
               self._release(order_id, token, "duplicate payment for an already purchased course; refund required")
               report.errors += 1
               return

          logger.info("Order %s resolved as paid by reconciliation", order_id)
          report.resolved_paid += 1
          if trigger_enrollment(self.session_factory, record.user_id, record.course_id, order_id):
               report.enrollments_retried += 1

     def _fail(self, order_id: str, token: str, reason: str, report: ReconciliationReport) -> None:
          with session_scope(self.session_factory) as db:
               failed = ledger_service.mark_failed(db, order_id, token, reason)
          if failed:
               logger.info("Order %s resolved as failed by reconciliation: %s", order_id, reason)
               report.resolved_failed += 1

     def _release(self, order_id: str, token: str, last_error: str) -> None:
          with session_scope(self.session_factory) as db:
               ledger_service.release_claim(db, order_id, token, last_error=last_error)

     # ------------------------------------------------------------------
     # Abandoned cancel claims
     # ------------------------------------------------------------------

     def resolve_stale_cancels(self, report: ReconciliationReport) -> None:
          stale_before = utcnow() - self.stale_after
          with session_scope(self.session_factory) as db:
               order_ids = [
                    r.order_id
                    for r in ledger_service.list_stale_cancel_claims(db, stale_before, self.batch_size)
               ]
          for order_id in order_ids:
               try:
                    self._resolve_cancel(order_id, stale_before, report)
               except Exception:
                    logger.exception("Reconciliation of cancel on order %s failed", order_id)
                    report.errors += 1

     def _resolve_cancel(self, order_id: str, stale_before, report: ReconciliationReport) -> None:
          token = str(uuid.uuid4())
          with session_scope(self.session_factory) as db:
               if not ledger_service.claim_stale_cancel(db, order_id, token, stale_before):
                    return
               record = ledger_service.reload(db, order_id)

          adapter = self.gateways.get(record.provider)
          if adapter is None:
               self._release(order_id, token, f"gateway {record.provider} is not configured")
               report.released_claims += 1
               report.errors += 1
               return

          try:
               result = adapter.query(record.provider_transaction_id)
          except GatewayTimeoutError as exc:
               # gateway state unknown; keep the order paid and cancellable
               self._release(order_id, token, f"reconcile cancel query outcome unknown: {exc.message}")
               report.released_claims += 1
               return

          if result.success and result.status == PaymentStatus.CANCELLED.value:
               self._record_cancel(record, token, record.declared_amount, True, report)
          elif result.success and result.status == PaymentStatus.REFUNDED.value and result.cancelled_amount:
               full = result.cancelled_amount >= record.declared_amount
               self._record_cancel(record, token, result.cancelled_amount, full, report)
          else:
               if not result.success:
                    logger.warning("Order %s: gateway query declined: %s", order_id, result.diagnostic)
               self._release(order_id, token, "abandoned cancel claim released; payment still active at the gateway")
               logger.info("Order %s: released abandoned cancel claim", order_id)
               report.released_claims += 1

     def _record_cancel(self, record: PaymentRecord, token: str, amount: int, full: bool, report: ReconciliationReport) -> None:
          with session_scope(self.session_factory) as db:
               done = ledger_service.mark_cancelled(
                    db,
                    record.order_id,
                    token,
                    reason="cancelled at gateway, recorded by reconciliation",
                    amount=amount,
                    full=full,
               )
          if done:
               logger.info(
                    "Order %s resolved as %s (amount %s) by reconciliation",
                    record.order_id, "cancelled" if full else "refunded", amount,
               )
               report.resolved_cancelled += 1

     # ------------------------------------------------------------------
     # Paid without enrollment
     # ------------------------------------------------------------------

     def retry_enrollments(self, report: ReconciliationReport) -> None:
          with session_scope(self.session_factory) as db:
               orders = [
                    (r.order_id, r.user_id, r.course_id)
                    for r in ledger_service.list_paid_without_enrollment(db, self.batch_size)
               ]
          for order_id, user_id, course_id in orders:
               if trigger_enrollment(self.session_factory, user_id, course_id, order_id):
                    report.enrollments_retried += 1
               else:
                    report.errors += 1
