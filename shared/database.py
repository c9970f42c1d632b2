"""Database engine and session factory shared by the services."""
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

logger = logging.getLogger(__name__)

Base = declarative_base()

# Seconds a SQLite writer waits for the file lock before failing
SQLITE_LOCK_TIMEOUT = 30


class Database:
    """Owns the async engine and hands out sessions to the components."""

    def __init__(self, database_url: str, echo: bool = False):
        """
        Initialize database connection.

        Args:
            database_url: Async SQLAlchemy URL (asyncpg in deployment, aiosqlite locally)
            echo: Whether to echo SQL queries
        """
        engine_options = {"echo": echo}
        if database_url.startswith("sqlite"):
            # One connection per session; concurrent writers queue on the file lock
            engine_options.update(poolclass=NullPool, connect_args={"timeout": SQLITE_LOCK_TIMEOUT})
        else:
            engine_options.update(pool_size=10, max_overflow=20, pool_pre_ping=True)

        self.engine = create_async_engine(database_url, **engine_options)

        # Loaded attributes stay readable after commit
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_tables(self):
        """Create all database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database tables created ({len(Base.metadata.tables)} tables)")

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()
        logger.info("Database connections closed")
