"""
Database Initialization

Creates the SQLite schema and provides async sessions for FastAPI.
Tables: products, stock_movements, orders, order_sequences, transactions
"""
from pathlib import Path
from typing import AsyncGenerator
import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

from ..config import settings
from .models import Base

logger = logging.getLogger(__name__)


def build_engine(database_path: str) -> AsyncEngine:
    """
    Create an async engine with WAL mode and a generous lock timeout.
    """
    async_engine = create_async_engine(
        f"sqlite+aiosqlite:///{database_path}",
        echo=False,
        future=True,
        connect_args={
            "timeout": 30,  # 30 second timeout for lock acquisition
            "check_same_thread": False
        },
        pool_pre_ping=True,
    )

    @event.listens_for(async_engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    return async_engine


async def create_tables(async_engine: AsyncEngine) -> None:
    """Create all tables declared on Base.metadata if missing."""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


engine = build_engine(settings.database_path)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def initialize_database() -> None:
    """
    Initialize the database with all required tables.

    This function is called during FastAPI startup.
    """
    db_path = Path(settings.database_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"Initializing database at: {db_path}")
    await create_tables(engine)
    logger.info(f"Database initialized successfully at {db_path}")


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions in FastAPI.

    Usage:
        @app.get("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_async_session)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


# Alias for FastAPI Depends
get_db = get_async_session
