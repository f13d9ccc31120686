"""
Database Session Management

Connection pooling and session lifecycle for PostgreSQL (production) and
SQLite (local development and tests). Engines are created explicitly and
owned by the application context.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool

from ranksheet.utils.config import Settings
from .models import Base

logger = logging.getLogger(__name__)


# =============================================================================
# DATABASE URL CONFIGURATION
# =============================================================================

def get_database_url(settings: Settings) -> str:
    """
    Resolve the database URL.

    Priority:
    1. DATABASE_URL (postgres:// is normalized to postgresql://)
    2. SQLite fallback for local development
    """
    url = settings.DATABASE_URL

    if url:
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        logger.info("Using database from DATABASE_URL")
        return url

    logger.warning(f"No DATABASE_URL found, using SQLite: {settings.SQLITE_PATH}")
    return f"sqlite:///{settings.SQLITE_PATH}"


def is_postgres_url(url: str) -> bool:
    return url.startswith("postgresql")


# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================

def create_db_engine(url: str, settings: Optional[Settings] = None) -> Engine:
    """
    Create database engine with appropriate settings.

    PostgreSQL: bounded QueuePool, pre-ping, recycling
    SQLite: thread-shareable connections, foreign key support
    """
    if is_postgres_url(url):
        pool_size = settings.DB_POOL_SIZE if settings else 5
        max_overflow = settings.DB_MAX_OVERFLOW if settings else 10
        pool_timeout = settings.DB_POOL_TIMEOUT if settings else 30
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=pool_size,            # Base connections
            max_overflow=max_overflow,      # Additional connections under load
            pool_timeout=pool_timeout,      # Wait for connection
            pool_recycle=1800,              # Recycle connections after 30 min
            pool_pre_ping=True,             # Verify connections before use
        )
        logger.info("Created PostgreSQL engine with connection pooling")
        return engine

    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection so every session sees the same in-memory db
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    logger.info("Created SQLite engine")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,  # Don't expire objects after commit
    )


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Transactional session.

    Usage:
        with session_scope(factory) as db:
            db.add(item)
    """
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")


def check_db_connection(engine: Engine) -> bool:
    """
    Check if database connection is working.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
