# models/course.py
from sqlalchemy import Column, Integer, String, Boolean, DateTime, func
from .base import Base


class Course(Base):
     """
     Course catalog entry. Price is an integer amount in minor currency units
     and is the only source the engine uses for what to charge.
     """
     __tablename__ = "courses"

     id = Column(String(64), primary_key=True)
     title = Column(String(200), nullable=False)
     price = Column(Integer, nullable=False, default=0)
     is_active = Column(Boolean, nullable=False, default=True)
     created_at = Column(DateTime, server_default=func.now(), nullable=False)

     def __repr__(self):
          return f"<Course(id={self.id}, title='{self.title}', price={self.price})>"

     @property
     def is_payable(self) -> bool:
          """Free or inactive courses cannot go through the payment path."""
          return bool(self.is_active) and (self.price or 0) > 0
