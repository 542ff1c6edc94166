"""
Database connection and session management.
Provides the database engine and session factory.
"""
import logging
from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from kline_sync.config import settings
from kline_sync.models import Base

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def create_db_engine(database_url: str) -> Engine:
    """Create an engine with pooling suited to the backend."""
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
            # One shared connection, otherwise every checkout sees an empty database
            return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool, echo=False)
        return create_engine(database_url, connect_args=connect_args, echo=False)

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout_seconds,
        pool_pre_ping=True,  # Verify connections before using
        echo=False,
    )


def create_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = create_db_engine(settings.database_url)

# Session factory
SessionLocal = create_session_factory(engine)


def init_db(bind: Engine | None = None):
    """Initialize database schema. Safe to call multiple times."""
    logger.info("Initializing database schema...")
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database schema initialized successfully")


@contextmanager
def session_scope(factory: SessionFactory = SessionLocal) -> Iterator[Session]:
    """
    Context manager for database sessions.
    Commits on success, rolls back and re-raises on error.
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.warning(f"Rolled back database session: {e}")
        raise
    finally:
        session.close()
