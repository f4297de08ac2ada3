"""
Database session management with SQLAlchemy 2.0.

Provides engine configuration, session creation and context managers for
safe database access with automatic transaction rollback.
"""

from contextlib import contextmanager
from typing import Any, Dict, Generator

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IllegalStateChangeError, SQLAlchemyError
from sqlalchemy.orm import Session, scoped_session, sessionmaker
from loguru import logger

from moodscope.config import settings
from moodscope.utils.errors import DatabaseError


def _engine_options() -> Dict[str, Any]:
    if settings.is_sqlite:
        return {
            "echo": settings.debug,
            "connect_args": {"check_same_thread": False},
        }
    return {
        "echo": settings.debug,
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }


engine = create_engine(settings.database_url, **_engine_options())

SessionLocal = scoped_session(
    sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False,
    )
)


def init_db() -> None:
    """Create all tables. Idempotent."""
    from moodscope.db.models import Base

    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.info("Database schema initialized")


def check_db_health() -> bool:
    """Run a trivial query against the engine."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return False


def get_db() -> Session:
    """
    Get a database session.

    Note:
        Caller is responsible for closing the session with close_db_session()
        or using the get_db_context() context manager.
    """
    return SessionLocal()


def close_db_session(db: Session) -> None:
    """Close a session from get_db() and drop it from the registry."""
    try:
        db.close()
    except IllegalStateChangeError:
        pass
    SessionLocal.remove()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Get a database session as a context manager.

    The session is committed on success and rolled back on error; the
    original exception propagates.
    """
    db = get_db()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Database transaction failed: {e}")
        raise
    finally:
        close_db_session(db)


@contextmanager
def get_db_transaction() -> Generator[Session, None, None]:
    """
    Get a database session with explicit transaction control.

    Usage:
        with get_db_transaction() as db:
            CalibrationController(...).run_cycle(window)

    The transaction is committed on success. Any failure rolls it back and
    surfaces as DatabaseError.
    """
    db = get_db()
    try:
        yield db
        db.commit()
        logger.debug("Database transaction committed")
    except Exception as e:
        db.rollback()
        logger.error(f"Database transaction rolled back: {e}")
        raise DatabaseError(f"Transaction failed: {e}")
    finally:
        close_db_session(db)
