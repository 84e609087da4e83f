from sqlalchemy import Column, DateTime, func
from sqlalchemy.orm import DeclarativeBase

from utils.time import utcnow


class Base(DeclarativeBase):
     """
     Base class for all SQLAlchemy models.
     Every model names its table explicitly with __tablename__.
     """


class TimestampMixin:
     """created_at / updated_at maintained by the application."""

     created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)
     updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=True)
