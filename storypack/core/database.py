"""Async SQLAlchemy engine and session management.

Engines and session factories are built from a ``DatabaseSettings`` instance
and handed to callers; there is no import-time engine.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from storypack.core.config import DatabaseSettings
from storypack.utils.logging import get_logger

LOGGER = get_logger(__name__)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def create_engine(db_settings: DatabaseSettings) -> AsyncEngine:
    """Create an async engine for the configured database."""
    return create_async_engine(
        db_settings.connection_url,
        pool_size=db_settings.pool_size,
        max_overflow=db_settings.max_overflow,
        echo=db_settings.echo,
        # Disable prepared statement cache for PgBouncer compatibility
        connect_args={"statement_cache_size": 0},
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory bound to ``engine``."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class DatabaseClient:
    """PostgreSQL database client owning one engine and its session factory.

    Construct once per worker process and share by reference.
    """

    def __init__(self, engine: AsyncEngine):
        """Initialize database client.

        Args:
            engine: SQLAlchemy async engine
        """
        self.engine = engine
        self.session_maker = create_session_maker(engine)

    @classmethod
    def from_settings(cls, db_settings: DatabaseSettings) -> "DatabaseClient":
        return cls(create_engine(db_settings))

    async def connect(self) -> bool:
        """Test database connection."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

            LOGGER.info("Database connection successful")
            return True

        except Exception:
            LOGGER.error("Database connection failed", exc_info=True)
            raise

    async def disconnect(self) -> None:
        """Dispose of the engine's connection pool."""
        await self.engine.dispose()
        LOGGER.info("Database connection closed")
