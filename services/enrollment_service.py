# services/enrollment_service.py
"""
Enrollment Trigger - marks a user as enrolled once their order is paid.

Idempotent on (user_id, course_id): an existing registration is updated to
approved, never duplicated. Safe to call again for the same order.
"""
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from database import session_scope
from models import CourseRegistration, RegistrationStatus
from utils.time import utcnow

logger = logging.getLogger(__name__)


class EnrollmentService:
     """Service class for the paid-order enrollment side effect."""

     @staticmethod
     def get_registration(db: Session, user_id: str, course_id: str):
          return (
               db.query(CourseRegistration)
               .filter(
                    CourseRegistration.user_id == user_id,
                    CourseRegistration.course_id == course_id,
               )
               .first()
          )

     @staticmethod
     def _approve(registration: CourseRegistration, order_id: str) -> None:
          registration.status = RegistrationStatus.APPROVED
          registration.payment_status = "paid"
          registration.payment_id = order_id
          if registration.approved_at is None:
               registration.approved_at = utcnow()

     @classmethod
     def enroll_paid_order(cls, db: Session, user_id: str, course_id: str, order_id: str) -> CourseRegistration:
          """
          Create or approve the registration for a paid order.

          Expects a session dedicated to this call: on an insert race the
          session is rolled back before the existing row is approved.

          Args:
               db: SQLAlchemy database session
               user_id: purchasing user
               course_id: purchased course
               order_id: the paid order, stored as payment_id

          Returns:
               The approved CourseRegistration
          """
          registration = cls.get_registration(db, user_id, course_id)
          if registration is not None:
               cls._approve(registration, order_id)
               db.flush()
               logger.info("Approved existing registration %s for order %s", registration.id, order_id)
               return registration

          registration = CourseRegistration(user_id=user_id, course_id=course_id)
          cls._approve(registration, order_id)
          db.add(registration)
          try:
               db.flush()
          except IntegrityError:
               # lost an insert race for the same pair; approve the other row
               db.rollback()
               registration = cls.get_registration(db, user_id, course_id)
               cls._approve(registration, order_id)
               db.flush()
          logger.info("Enrolled user %s in course %s for order %s", user_id, course_id, order_id)
          return registration


def trigger_enrollment(session_factory: sessionmaker, user_id: str, course_id: str, order_id: str) -> bool:
     """
     Run the enrollment for a paid order in its own transaction.

     A failure is logged and reported as False; the paid order stays paid and
     the reconciliation sweep retries it.
     """
     try:
          with session_scope(session_factory) as db:
               EnrollmentService.enroll_paid_order(db, user_id, course_id, order_id)
          return True
     except Exception:
          logger.exception("Enrollment failed for paid order %s; left for reconciliation", order_id)
          return False
