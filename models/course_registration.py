# models/course_registration.py
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum, UniqueConstraint
from .base import Base, TimestampMixin


class RegistrationStatus(str, enum.Enum):
     """Enrollment approval state."""
     PENDING = "pending"
     APPROVED = "approved"
     REJECTED = "rejected"


class CourseRegistration(Base, TimestampMixin):
     """
     Enrollment of a user in a course.
     At most one row per (user, course); payment_id points back at the order
     that paid for it.
     """
     __tablename__ = "course_registrations"
     __table_args__ = (
          UniqueConstraint("user_id", "course_id", name="uq_course_registrations_user_course"),
     )

     id = Column(Integer, primary_key=True, autoincrement=True)
     user_id = Column(String(64), nullable=False, index=True)
     course_id = Column(String(64), nullable=False, index=True)
     status = Column(
          Enum(
               RegistrationStatus,
               name="registration_status",
               create_constraint=True,
               native_enum=False,
               values_callable=lambda e: [m.value for m in e],
          ),
          default=RegistrationStatus.PENDING,
          nullable=False,
     )
     payment_status = Column(String(16), nullable=True)
     payment_id = Column(String(64), nullable=True, index=True)
     approved_at = Column(DateTime, nullable=True)

     def __repr__(self):
          return (
               f"<CourseRegistration(user_id={self.user_id}, course_id={self.course_id}, "
               f"status='{self.status.value if self.status else None}')>"
          )
