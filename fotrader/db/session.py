"""
Database Session Management
fotrader - F&O Signal & Execution Engine

Provides async database connection with:
- Engine / session factory ownership
- Context manager support (commit on success, rollback on error)
- Dependency injection for FastAPI
- Health check capabilities
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from fotrader.core.config import settings


class Database:
    """
    Owns the async engine and session factory.

    Services receive a Database instance instead of importing a module-level
    engine, so tests can hand them an in-memory SQLite database.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        echo: Optional[bool] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        if engine is None:
            db_settings = settings.db
            url = url or db_settings.url
            kwargs = {"echo": db_settings.echo if echo is None else echo, "future": True}
            if not url.startswith("sqlite"):
                kwargs.update(
                    pool_size=10,
                    max_overflow=20,
                    pool_timeout=30,
                    pool_recycle=1800,  # Recycle connections after 30 minutes
                    pool_pre_ping=True,
                )
            engine = create_async_engine(url, **kwargs)

        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Context manager for database sessions.

        Usage:
            async with db.session() as session:
                result = await session.execute(query)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """
        Create all tables.

        There are no migrations; the schema is created on startup.
        """
        from fotrader.db.base import Base
        from fotrader.db import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("✓ Database tables ready")

    async def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
                return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close all database connections."""
        await self.engine.dispose()


_database: Optional[Database] = None


def get_database() -> Database:
    """Get the process-wide Database, creating it on first use."""
    global _database
    if _database is None:
        _database = Database()
    return _database


def set_database(database: Optional[Database]) -> None:
    """Replace the process-wide Database (application startup and tests)."""
    global _database
    _database = database


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for database sessions.

    Usage:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_database().session() as session:
        yield session
