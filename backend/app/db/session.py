"""
Database session configuration.

This module handles database engine creation and session management
using SQLAlchemy with async support for PostgreSQL (and SQLite for tests).
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from backend.app.core.config import settings


def configure_sqlite_engine(async_engine: AsyncEngine) -> AsyncEngine:
    """
    Make every SQLite transaction a single-writer transaction.

    pysqlite/aiosqlite defer BEGIN until the first write, which lets two
    connections both read a wallet and then race to upgrade their locks.
    Emitting BEGIN IMMEDIATE ourselves takes the write lock up front, so
    concurrent settlement transactions queue on the busy timeout instead.
    """
    sync_engine = async_engine.sync_engine

    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Disable the driver's own BEGIN handling
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return async_engine


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the configured backend."""
    if url.startswith("sqlite"):
        return configure_sqlite_engine(
            create_async_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
        )

    return create_async_engine(
        url,
        echo=echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        future=True,
    )


# Create async engine
engine = build_engine(settings.database_url, echo=settings.db_echo)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Create declarative base for models
Base = declarative_base()


async def get_db():
    """
    FastAPI dependency for database sessions.

    Yields an async database session and ensures it's properly closed.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker:
    """
    FastAPI dependency returning the session factory.

    The settlement engine opens its own transactions (one per attempt),
    so it needs the factory rather than a request-scoped session.
    """
    return AsyncSessionLocal
