"""
Database configuration and session management.
Uses SQLAlchemy 2.0 with async support.
"""

from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine
)

from .config import Settings, DatabaseConfig
from .logging import get_logger

logger = get_logger(__name__)


class Database:
    """Owns the async engine and session maker for one process."""

    def __init__(self, settings: Settings, url: Optional[str] = None):
        self.settings = settings
        self.url = url or DatabaseConfig.get_database_url(settings, async_driver=True)
        self.engine: Optional[AsyncEngine] = None
        self.session_maker: Optional[async_sessionmaker[AsyncSession]] = None

    async def init(self) -> None:
        """Initialize database connections and session makers."""
        logger.info("Initializing database connections")

        self.engine = create_async_engine(
            self.url,
            **DatabaseConfig.get_engine_config(self.settings),
            echo=self.settings.debug
        )

        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        logger.info("Database connections initialized")

    async def close(self) -> None:
        """Close database connections."""
        logger.info("Closing database connections")

        if self.engine:
            await self.engine.dispose()
            self.engine = None

        logger.info("Database connections closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session with automatic cleanup.

        Commits on clean exit and rolls back on any exception, so one
        ``async with`` block is one all-or-nothing transaction.

        Usage:
            async with database.session() as session:
                # Use session here
                pass
        """
        if not self.session_maker:
            raise RuntimeError("Database not initialized. Call init() first.")

        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def create_tables(self) -> None:
        """Create all tables in the database."""
        from licenseflow.models.base import Base
        import licenseflow.models  # noqa: F401  (registers mappers)

        if not self.engine:
            raise RuntimeError("Database not initialized")

        logger.info("Creating database tables")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def drop_tables(self) -> None:
        """Drop all tables in the database."""
        from licenseflow.models.base import Base
        import licenseflow.models  # noqa: F401

        if not self.engine:
            raise RuntimeError("Database not initialized")

        logger.warning("Dropping all database tables")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Database tables dropped")

    async def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False
