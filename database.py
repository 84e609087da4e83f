# database.py
"""
SQLAlchemy database connection and session management.

This module provides:
- Database engine configuration (Azure SQL / MS SQL Server in production,
  any SQLAlchemy URL through DATABASE_URL)
- Session factory and the session_scope unit of work
- Connection utilities
"""
import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from config import get_settings

logger = logging.getLogger(__name__)


def make_engine(database_url: str, echo: bool = False) -> Engine:
     """
     Build an engine for the given URL.

     SQLite gets check_same_thread disabled and a busy timeout so that
     request threads can share one database file.
     """
     if database_url.startswith("sqlite"):
          return create_engine(
               database_url,
               connect_args={"check_same_thread": False, "timeout": 30},
               echo=echo,
          )
     return create_engine(
          database_url,
          poolclass=QueuePool,
          pool_size=5,
          max_overflow=10,
          pool_timeout=30,
          pool_recycle=1800,  # Recycle connections after 30 minutes
          pool_pre_ping=True,
          echo=echo,
     )


def make_session_factory(bind: Engine) -> sessionmaker:
     return sessionmaker(
          bind=bind,
          autocommit=False,
          autoflush=False,
          expire_on_commit=False,
     )


_settings = get_settings()

# Create SQLAlchemy engine
engine = make_engine(_settings.database_url, echo=_settings.sql_echo)

# Session factory
SessionLocal = make_session_factory(engine)


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Generator[Session, None, None]:
     """
     Context manager for one unit of work.

     Commits when the block exits cleanly, rolls back and re-raises otherwise.

     Usage:
          with session_scope(factory) as db:
               record = db.query(PaymentRecord).first()
     """
     session = factory()
     try:
          yield session
          session.commit()
     except Exception:
          session.rollback()
          raise
     finally:
          session.close()


def init_db(bind: Engine = engine) -> None:
     """
     Initialize database tables.

     Creates all tables defined in the models if they don't exist.
     For production, use Alembic migrations instead.
     """
     from models import Base
     Base.metadata.create_all(bind=bind)


def check_connection(bind: Engine = engine) -> bool:
     """
     Test database connectivity.

     Returns:
          bool: True if connection successful, False otherwise
     """
     try:
          with bind.connect() as conn:
               conn.execute(text("SELECT 1"))
          return True
     except Exception:
          logger.exception("Database connection failed")
          return False
