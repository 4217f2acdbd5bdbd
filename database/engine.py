"""
Database Persistence Layer - Core Engine.

============================================================
ASYNC DATABASE PERSISTENCE
============================================================

Provides the declarative base, the async engine and explicit
transaction boundaries for the alerting pipeline.

Requirements:
- SQLAlchemy 2.x async ORM (asyncpg in production,
  aiosqlite in tests)
- Explicit transaction management
- Short transactions: one unit of work per scope
- Store failures surface as DatabasePersistenceError, a
  TransientIOError the batch jobs isolate per agent/alert

============================================================
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Awaitable, Optional, TypeVar

from sqlalchemy import DateTime, event, text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from core.config import DatabaseConfig
from core.exceptions import TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================
# DECLARATIVE BASE
# =============================================================

class Base(DeclarativeBase):
    """
    Declarative base for all ORM models.

    Every datetime column is timezone-aware.
    """

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


# =============================================================
# CUSTOM EXCEPTIONS
# =============================================================


class DatabasePersistenceError(TransientIOError):
    """Raised when database persistence fails."""
    pass


class DatabaseConnectionError(DatabasePersistenceError):
    """Raised when database connection fails."""
    pass


class DatabaseInitializationError(DatabasePersistenceError):
    """Raised when database initialization fails."""
    pass


class DuplicateRecordError(DatabasePersistenceError):
    """Raised when a write violates a unique constraint."""
    pass


# =============================================================
# DATABASE ENGINE
# =============================================================

def create_database_engine(config: DatabaseConfig) -> AsyncEngine:
    """
    Create SQLAlchemy async engine with connection pooling.

    In-memory SQLite gets a single shared connection so every
    session sees the same database.

    Args:
        config: Database configuration

    Returns:
        SQLAlchemy AsyncEngine
    """
    url = config.url
    logger.info(f"Creating database engine for: {url.split('@')[-1]}")

    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=config.echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    engine = create_async_engine(
        url,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout_seconds,
        pool_recycle=config.pool_recycle_seconds,
        pool_pre_ping=True,
        echo=config.echo,
    )

    @event.listens_for(engine.sync_engine, "checkout")
    def _on_checkout(dbapi_conn, connection_record, connection_proxy):
        logger.debug("Database connection checked out from pool")

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the engine. Objects stay usable after commit."""
    return async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


# =============================================================
# SESSION MANAGEMENT
# =============================================================


@asynccontextmanager
async def transaction_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """
    Context manager for explicit transaction boundaries.

    Commits only if no exception occurs.
    Rolls back on ANY exception. SQLAlchemy errors are wrapped in
    DatabasePersistenceError; domain errors pass through untouched.

    Usage:
        async with transaction_scope(factory) as session:
            session.add(record)
            # Commits automatically at end
    """
    session = session_factory()
    try:
        yield session
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise DuplicateRecordError(f"Constraint violated: {e.orig}", cause=e) from e
    except SQLAlchemyError as e:
        logger.error(f"Database transaction failed, rolling back: {e}")
        await session.rollback()
        raise DatabasePersistenceError(f"Transaction failed: {e}", cause=e) from e
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()


async def bounded(awaitable: Awaitable[T], timeout_seconds: float, operation: str) -> T:
    """
    Await a store operation with an upper bound.

    A timeout cancels the operation (its transaction scope rolls
    back) and surfaces as DatabasePersistenceError, as do driver
    errors raised outside a transaction scope.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        logger.error(f"Store operation timed out: {operation} after {timeout_seconds}s")
        raise DatabasePersistenceError(
            f"{operation} timed out after {timeout_seconds}s",
            context={"operation": operation},
            cause=e,
        ) from e
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Store operation failed: {operation}: {e}")
        raise DatabasePersistenceError(
            f"{operation} failed: {e}",
            context={"operation": operation},
            cause=e,
        ) from e


# =============================================================
# DATABASE INITIALIZATION
# =============================================================


async def verify_database_connection(engine: AsyncEngine) -> bool:
    """
    Verify database connection is working.

    Raises:
        DatabaseConnectionError if connection fails
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection verified successfully")
        return True
    except OperationalError as e:
        logger.error(f"Database connection failed: {e}")
        raise DatabaseConnectionError(f"Cannot connect to database: {e}", cause=e) from e


async def create_all_tables(engine: AsyncEngine) -> None:
    """
    Create all tables defined in ORM models.

    Raises:
        DatabaseInitializationError if table creation fails
    """
    from . import models  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {e}")
        raise DatabaseInitializationError(f"Table creation failed: {e}", cause=e) from e


async def initialize_database(config: DatabaseConfig, engine: Optional[AsyncEngine] = None) -> AsyncEngine:
    """
    Full database initialization sequence.

    1. Verify connection
    2. Create tables if not exist
    """
    engine = engine or create_database_engine(config)
    await verify_database_connection(engine)
    await create_all_tables(engine)
    return engine


__all__ = [
    "Base",
    "create_database_engine",
    "create_session_factory",
    "transaction_scope",
    "bounded",
    "verify_database_connection",
    "create_all_tables",
    "initialize_database",
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
    "DuplicateRecordError",
]
