# models/user.py
from sqlalchemy import Column, String, DateTime, func
from .base import Base


class User(Base):
     """
     Read-only mirror of the identity provider's users.
     Only what the payment engine needs to validate a purchase.
     """
     __tablename__ = "users"

     id = Column(String(64), primary_key=True)
     email = Column(String(255), unique=True, nullable=False, index=True)
     name = Column(String(100), nullable=True)
     created_at = Column(DateTime, server_default=func.now(), nullable=False)

     def __repr__(self):
          return f"<User(id={self.id}, email='{self.email}')>"
