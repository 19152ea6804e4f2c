"""Database connection utilities"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import sqlalchemy as sa
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from .config import get_config
from .errors import TransientStoreError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models"""
    pass


def is_transient_db_error(exc: BaseException) -> bool:
    """True for connection-class failures that a redelivery may get past"""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


class DatabaseManager:
    """Database connection manager"""

    def __init__(self, engine: Optional[AsyncEngine] = None):
        self.engine = engine
        self.session_factory = None
        self._initialized = False
        if engine is not None:
            self._bind(engine)

    def _bind(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self._initialized = True

    async def initialize(self, database_url: Optional[str] = None):
        """Initialize database connection"""
        if self._initialized:
            return

        config = get_config()
        db_url = database_url or config.database_url

        engine_kwargs = {"echo": config.log_level == "DEBUG", "pool_pre_ping": True}
        if config.environment == "test":
            engine_kwargs["poolclass"] = NullPool
        else:
            engine_kwargs["pool_recycle"] = 3600

        self._bind(create_async_engine(db_url, **engine_kwargs))
        logger.info("Database connection initialized")

    async def close(self):
        """Close database connections"""
        if self.engine:
            await self.engine.dispose()
            self._initialized = False
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Unit of work: commit on success, roll back and classify failures"""
        if not self._initialized:
            await self.initialize()

        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                if is_transient_db_error(e):
                    raise TransientStoreError(f"Backing store unavailable: {e}") from e
                raise


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get database manager instance"""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


async def check_database_health() -> dict:
    """Check database connection health"""
    try:
        async with get_db_manager().get_session() as session:
            result = await session.execute(sa.text("SELECT 1"))
            result.scalar()

            return {
                "status": "healthy",
                "message": "Database connection successful"
            }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {
            "status": "unhealthy",
            "message": f"Database connection failed: {str(e)}"
        }
