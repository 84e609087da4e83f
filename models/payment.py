# models/payment.py
"""
PaymentRecord model - the ledger of purchase attempts.

One row per order. declared_amount is fixed at prepare time from the course
catalog and never changes. status is the only field that drives business
logic; every write to it is a conditional (compare-and-swap) update issued
by services/ledger_service.py. Rows are never deleted.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum, Index, Text, text
from .base import Base, TimestampMixin


class PaymentStatus(str, enum.Enum):
     """Lifecycle states of an order."""
     PENDING = "pending"
     PAID = "paid"
     FAILED = "failed"
     CANCELLED = "cancelled"
     REFUNDED = "refunded"


class PaymentProvider(str, enum.Enum):
     """Supported payment gateways."""
     TOSSPAYMENTS = "tosspayments"
     IAMPORT = "iamport"


DEFAULT_METHOD = "card"


class PaymentRecord(Base, TimestampMixin):
     """
     One purchase attempt of a course by a user.

     provider_transaction_id is set only when the order reaches paid and is
     kept through cancelled/refunded. attempted_payment_key holds the handle of
     the last confirm attempt so an unresolved pending order can be reconciled.
     """
     __tablename__ = "payments"
     __table_args__ = (
          # At most one paid order per (user, course)
          Index(
               "uq_payments_user_course_paid",
               "user_id",
               "course_id",
               unique=True,
               sqlite_where=text("status = 'paid'"),
               postgresql_where=text("status = 'paid'"),
               mssql_where=text("status = 'paid'"),
          ),
          Index("ix_payments_user_course", "user_id", "course_id"),
     )

     order_id = Column(String(64), primary_key=True)
     user_id = Column(String(64), nullable=False, index=True)
     course_id = Column(String(64), nullable=False, index=True)

     order_name = Column(String(200), nullable=False)
     declared_amount = Column(Integer, nullable=False)  # minor currency units
     provider = Column(String(32), nullable=False)
     method = Column(String(32), nullable=True)

     status = Column(
          Enum(
               PaymentStatus,
               name="payment_status",
               create_constraint=True,
               native_enum=False,
               values_callable=lambda e: [m.value for m in e],
          ),
          default=PaymentStatus.PENDING,
          nullable=False,
          index=True,
     )

     customer_name = Column(String(100), nullable=True)
     customer_email = Column(String(255), nullable=True)
     success_url = Column(String(500), nullable=True)
     fail_url = Column(String(500), nullable=True)

     provider_transaction_id = Column(String(200), nullable=True, index=True)
     receipt_url = Column(String(500), nullable=True)

     fail_reason = Column(Text, nullable=True)
     refund_reason = Column(Text, nullable=True)
     refund_amount = Column(Integer, nullable=True)

     approved_at = Column(DateTime, nullable=True)
     cancelled_at = Column(DateTime, nullable=True)
     refunded_at = Column(DateTime, nullable=True)

     # Compare-and-swap claim held while a gateway call is in flight
     processing_token = Column(String(36), nullable=True, index=True)
     processing_started_at = Column(DateTime, nullable=True)
     attempted_payment_key = Column(String(200), nullable=True)
     last_error = Column(Text, nullable=True)

     def __repr__(self):
          return (
               f"<PaymentRecord(order_id={self.order_id}, amount={self.declared_amount}, "
               f"status='{self.status.value if self.status else None}')>"
          )
