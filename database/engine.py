"""
Database Persistence Layer - Core Engine.

============================================================
DECISION MONITOR PERSISTENCE
============================================================

Engine, session factory and transaction boundaries for the
decision store.

Requirements:
- SQLAlchemy ORM (PostgreSQL in production, SQLite allowed)
- Explicit transaction management
- Hard failures on persistence errors

============================================================
"""

import os
import logging
from typing import Optional, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, text, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import SQLAlchemyError, OperationalError

from dotenv import load_dotenv

from core.exceptions import PersistenceError

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# =============================================================
# DECLARATIVE BASE
# =============================================================

Base = declarative_base()

# =============================================================
# DATABASE ENGINE
# =============================================================

DEFAULT_DATABASE_URL = "sqlite:///./decision_monitor.db"

_engine: Optional[Engine] = None
_SessionFactory: Optional[sessionmaker] = None


def get_database_url() -> str:
    """Get database URL from environment."""
    url = os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql+asyncpg"):
        # The store is driven synchronously
        url = url.replace("postgresql+asyncpg", "postgresql")

    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")

    return url


def create_database_engine(
    database_url: Optional[str] = None,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    echo: bool = False,
) -> Engine:
    """
    Create SQLAlchemy engine.

    Pool settings only apply to server databases; SQLite uses
    the dialect's default pool.

    Args:
        database_url: Explicit URL (defaults to environment)
        pool_size: Number of connections to keep in pool
        max_overflow: Max connections beyond pool_size
        pool_timeout: Seconds to wait for available connection
        pool_recycle: Recycle connections after N seconds
        echo: Log SQL statements

    Returns:
        SQLAlchemy Engine
    """
    url = database_url or get_database_url()

    logger.info(f"Creating database engine for: {url.split('@')[-1]}")

    if url.startswith("sqlite"):
        engine = create_engine(url, echo=echo, future=True)
    else:
        engine = create_engine(
            url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            echo=echo,
            future=True,
        )

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        if url.startswith("sqlite"):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
        logger.debug("Database connection established")

    return engine


def get_engine() -> Engine:
    """Get the database engine, creating if necessary."""
    global _engine
    if _engine is None:
        _engine = create_database_engine()
    return _engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Build a session factory bound to `engine`."""
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


def get_session_factory() -> sessionmaker:
    """Get the process-wide session factory, creating if necessary."""
    global _SessionFactory

    if _SessionFactory is None:
        _SessionFactory = create_session_factory(get_engine())

    return _SessionFactory


# =============================================================
# SESSION MANAGEMENT
# =============================================================


@contextmanager
def transaction_scope(
    session_factory: Optional[sessionmaker] = None,
) -> Generator[Session, None, None]:
    """
    Context manager for explicit transaction boundaries.

    Commits only if no exception occurs.
    Rolls back on ANY exception.

    SQLAlchemy failures are re-raised as DatabasePersistenceError;
    domain exceptions raised inside the block propagate unchanged.

    Usage:
        with transaction_scope(factory) as session:
            repository = DecisionEvaluationRepository(session)
            repository.persist_evaluation(...)
            # Commits automatically at end
    """
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
        logger.debug("Database transaction committed successfully")
    except SQLAlchemyError as e:
        logger.error(f"Database transaction failed, rolling back: {e}")
        session.rollback()
        raise DatabasePersistenceError(f"Transaction failed: {e}", cause=e) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================
# DATABASE INITIALIZATION
# =============================================================


def verify_database_connection(engine: Optional[Engine] = None) -> bool:
    """
    Verify database connection is working.

    Raises:
        DatabaseConnectionError if connection fails
    """
    engine = engine or get_engine()

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
            logger.info("Database connection verified successfully")
            return True
    except OperationalError as e:
        logger.error(f"Database connection failed: {e}")
        raise DatabaseConnectionError(f"Cannot connect to database: {e}", cause=e) from e


def create_all_tables(engine: Optional[Engine] = None) -> None:
    """
    Create all tables defined in ORM models.

    Raises:
        DatabaseInitializationError if table creation fails
    """
    engine = engine or get_engine()

    # Register models with Base
    from . import models  # noqa: F401

    try:
        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {e}")
        raise DatabaseInitializationError(f"Table creation failed: {e}", cause=e) from e


def initialize_database(engine: Optional[Engine] = None) -> None:
    """
    Full database initialization sequence.

    1. Verify connection
    2. Create tables if not exist
    """
    logger.info("Initializing decision store")

    try:
        verify_database_connection(engine)
        create_all_tables(engine)
        logger.info("Decision store initialization complete")
    except Exception as e:
        logger.critical(f"DATABASE INITIALIZATION FAILED: {e}")
        raise


# =============================================================
# CUSTOM EXCEPTIONS
# =============================================================


class DatabasePersistenceError(PersistenceError):
    """Raised when database persistence fails."""
    pass


class DatabaseConnectionError(DatabasePersistenceError):
    """Raised when database connection fails."""
    pass


class DatabaseInitializationError(DatabasePersistenceError):
    """Raised when database initialization fails."""
    pass


# =============================================================
# EXPORTS
# =============================================================

__all__ = [
    "Base",
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "create_database_engine",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "transaction_scope",
    "initialize_database",
    "verify_database_connection",
    "create_all_tables",
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
]
