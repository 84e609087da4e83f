# services/ledger_service.py
"""
Payment Ledger Service - data access for PaymentRecord.

Records are inserted once (pending) and never deleted. Every status change is
a conditional UPDATE checked by its affected-row count:

1. claim:  pending/paid row with no processing_token -> set a fresh token
           (reconciliation may also take over a claim that has gone stale)
2. settle: row holding that token -> paid / failed / cancelled / refunded
3. release: row holding that token -> token cleared, status unchanged

Only the request that wins step 1 talks to the gateway. The functions flush
but never commit; the caller owns the transaction.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, aliased

from models import CourseRegistration, PaymentRecord, PaymentStatus, RegistrationStatus
from utils.time import utcnow


def create_pending_record(
     db: Session,
     *,
     order_id: str,
     user_id: str,
     course_id: str,
     order_name: str,
     amount: int,
     provider: str,
     method: Optional[str],
     customer_name: Optional[str] = None,
     customer_email: Optional[str] = None,
     success_url: Optional[str] = None,
     fail_url: Optional[str] = None,
) -> PaymentRecord:
     """
     Insert a new pending record.

     Raises:
          sqlalchemy.exc.IntegrityError: if order_id already exists. Nothing is overwritten.
     """
     record = PaymentRecord(
          order_id=order_id,
          user_id=user_id,
          course_id=course_id,
          order_name=order_name,
          declared_amount=amount,
          provider=provider,
          method=method,
          status=PaymentStatus.PENDING,
          customer_name=customer_name,
          customer_email=customer_email,
          success_url=success_url,
          fail_url=fail_url,
     )
     db.add(record)
     db.flush()
     return record


def get_by_order_id(db: Session, order_id: str) -> Optional[PaymentRecord]:
     return db.query(PaymentRecord).filter(PaymentRecord.order_id == order_id).first()


def reload(db: Session, order_id: str) -> Optional[PaymentRecord]:
     """Re-read a row, overwriting whatever the session has cached for it."""
     return (
          db.query(PaymentRecord)
          .populate_existing()
          .filter(PaymentRecord.order_id == order_id)
          .first()
     )


def get_by_payment_key(db: Session, payment_key: str) -> Optional[PaymentRecord]:
     return (
          db.query(PaymentRecord)
          .filter(PaymentRecord.provider_transaction_id == payment_key)
          .first()
     )


def find_paid_order(db: Session, user_id: str, course_id: str) -> Optional[PaymentRecord]:
     """The paid order of this (user, course), if any."""
     return (
          db.query(PaymentRecord)
          .filter(
               PaymentRecord.user_id == user_id,
               PaymentRecord.course_id == course_id,
               PaymentRecord.status == PaymentStatus.PAID,
          )
          .first()
     )


def claim_for_confirm(db: Session, record: PaymentRecord, token: str, payment_key: str) -> bool:
     """
     Claim a pending order for confirmation.

     Fails when the row is no longer pending, is claimed by someone else, or
     another order of the same (user, course) is paid or being processed.
     """
     other = aliased(PaymentRecord)
     pair_busy = (
          select(other.order_id)
          .where(
               other.user_id == record.user_id,
               other.course_id == record.course_id,
               other.order_id != record.order_id,
               or_(other.status == PaymentStatus.PAID, other.processing_token.isnot(None)),
          )
          .exists()
     )
     now = utcnow()
     count = (
          db.query(PaymentRecord)
          .filter(
               PaymentRecord.order_id == record.order_id,
               PaymentRecord.status == PaymentStatus.PENDING,
               PaymentRecord.processing_token.is_(None),
               ~pair_busy,
          )
          .update(
               {
                    "processing_token": token,
                    "processing_started_at": now,
                    "attempted_payment_key": payment_key,
                    "updated_at": now,
               },
               synchronize_session=False,
          )
     )
     return count == 1


def claim_for_cancel(db: Session, order_id: str, token: str) -> bool:
     """Claim a paid order for cancellation."""
     now = utcnow()
     count = (
          db.query(PaymentRecord)
          .filter(
               PaymentRecord.order_id == order_id,
               PaymentRecord.status == PaymentStatus.PAID,
               PaymentRecord.processing_token.is_(None),
          )
          .update(
               {"processing_token": token, "processing_started_at": now, "updated_at": now},
               synchronize_session=False,
          )
     )
     return count == 1


def claim_for_reconcile(db: Session, order_id: str, token: str, stale_before: datetime) -> bool:
     """Claim a pending order that is unclaimed, or whose claim is older than stale_before."""
     now = utcnow()
     count = (
          db.query(PaymentRecord)
          .filter(
               PaymentRecord.order_id == order_id,
               PaymentRecord.status == PaymentStatus.PENDING,
               or_(
                    PaymentRecord.processing_token.is_(None),
                    PaymentRecord.processing_started_at < stale_before,
               ),
          )
          .update(
               {"processing_token": token, "processing_started_at": now, "updated_at": now},
               synchronize_session=False,
          )
     )
     return count == 1


def claim_stale_cancel(db: Session, order_id: str, token: str, stale_before: datetime) -> bool:
     """Take over a paid order whose cancel claim is older than stale_before."""
     now = utcnow()
     count = (
          db.query(PaymentRecord)
          .filter(
               PaymentRecord.order_id == order_id,
               PaymentRecord.status == PaymentStatus.PAID,
               PaymentRecord.processing_token.isnot(None),
               PaymentRecord.processing_started_at < stale_before,
          )
          .update(
               {"processing_token": token, "processing_started_at": now, "updated_at": now},
               synchronize_session=False,
          )
     )
     return count == 1


def release_claim(db: Session, order_id: str, token: str, last_error: Optional[str] = None) -> bool:
     """Drop the claim without changing status."""
     values = {"processing_token": None, "processing_started_at": None, "updated_at": utcnow()}
     if last_error is not None:
          values["last_error"] = last_error
     count = (
          db.query(PaymentRecord)
          .filter(PaymentRecord.order_id == order_id, PaymentRecord.processing_token == token)
          .update(values, synchronize_session=False)
     )
     return count == 1


def mark_failed(db: Session, order_id: str, token: str, reason: str) -> bool:
     """pending -> failed. Terminal."""
     count = (
          db.query(PaymentRecord)
          .filter(
               PaymentRecord.order_id == order_id,
               PaymentRecord.status == PaymentStatus.PENDING,
               PaymentRecord.processing_token == token,
          )
          .update(
               {
                    "status": PaymentStatus.FAILED,
                    "fail_reason": reason,
                    "processing_token": None,
                    "processing_started_at": None,
                    "updated_at": utcnow(),
               },
               synchronize_session=False,
          )
     )
     return count == 1


def mark_paid(
     db: Session,
     order_id: str,
     token: str,
     *,
     payment_key: str,
     method: Optional[str] = None,
     approved_at: Optional[datetime] = None,
     receipt_url: Optional[str] = None,
) -> bool:
     """pending -> paid, storing the gateway's transaction handle."""
     values = {
          "status": PaymentStatus.PAID,
          "provider_transaction_id": payment_key,
          "approved_at": approved_at or utcnow(),
          "receipt_url": receipt_url,
          "processing_token": None,
          "processing_started_at": None,
          "attempted_payment_key": None,
          "last_error": None,
          "updated_at": utcnow(),
     }
     if method:
          values["method"] = method
     count = (
          db.query(PaymentRecord)
          .filter(
               PaymentRecord.order_id == order_id,
               PaymentRecord.status == PaymentStatus.PENDING,
               PaymentRecord.processing_token == token,
          )
          .update(values, synchronize_session=False)
     )
     return count == 1


def mark_cancelled(
     db: Session,
     order_id: str,
     token: str,
     *,
     reason: str,
     amount: int,
     full: bool,
) -> bool:
     """paid -> cancelled (full) or refunded (partial). Terminal."""
     now = utcnow()
     values = {
          "status": PaymentStatus.CANCELLED if full else PaymentStatus.REFUNDED,
          "refund_reason": reason,
          "refund_amount": amount,
          "processing_token": None,
          "processing_started_at": None,
          "last_error": None,
          "updated_at": now,
     }
     if full:
          values["cancelled_at"] = now
     else:
          values["refunded_at"] = now
     count = (
          db.query(PaymentRecord)
          .filter(
               PaymentRecord.order_id == order_id,
               PaymentRecord.status == PaymentStatus.PAID,
               PaymentRecord.processing_token == token,
          )
          .update(values, synchronize_session=False)
     )
     return count == 1


def list_reconcilable_pending(db: Session, stale_before: datetime, limit: int = 100) -> List[PaymentRecord]:
     """
     Pending orders whose gateway outcome is unresolved: a confirm was
     attempted and either the claim was released or it has gone stale.
     """
     return (
          db.query(PaymentRecord)
          .filter(
               PaymentRecord.status == PaymentStatus.PENDING,
               PaymentRecord.attempted_payment_key.isnot(None),
               or_(
                    and_(
                         PaymentRecord.processing_token.is_(None),
                         PaymentRecord.updated_at < stale_before,
                    ),
                    PaymentRecord.processing_started_at < stale_before,
               ),
          )
          .order_by(PaymentRecord.created_at)
          .limit(limit)
          .all()
     )


def list_stale_cancel_claims(db: Session, stale_before: datetime, limit: int = 100) -> List[PaymentRecord]:
     """Paid orders still claimed by a cancel that never finished."""
     return (
          db.query(PaymentRecord)
          .filter(
               PaymentRecord.status == PaymentStatus.PAID,
               PaymentRecord.processing_token.isnot(None),
               PaymentRecord.processing_started_at < stale_before,
          )
          .order_by(PaymentRecord.processing_started_at)
          .limit(limit)
          .all()
     )


def list_paid_without_enrollment(db: Session, limit: int = 100) -> List[PaymentRecord]:
     """Paid orders with no approved registration pointing back at them."""
     return (
          db.query(PaymentRecord)
          .outerjoin(
               CourseRegistration,
               and_(
                    CourseRegistration.user_id == PaymentRecord.user_id,
                    CourseRegistration.course_id == PaymentRecord.course_id,
                    CourseRegistration.payment_id == PaymentRecord.order_id,
                    CourseRegistration.status == RegistrationStatus.APPROVED,
               ),
          )
          .filter(
               PaymentRecord.status == PaymentStatus.PAID,
               CourseRegistration.id.is_(None),
          )
          .order_by(PaymentRecord.approved_at)
          .limit(limit)
          .all()
     )
