# models/__init__.py
from .base import Base
from .user import User
from .course import Course
from .payment import PaymentRecord, PaymentStatus, PaymentProvider
from .course_registration import CourseRegistration, RegistrationStatus

__all__ = [
     "Base",
     "User",
     "Course",
     "PaymentRecord",
     "PaymentStatus",
     "PaymentProvider",
     "CourseRegistration",
     "RegistrationStatus",
]
