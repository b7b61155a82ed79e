from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from delayed_jobs.config.settings import Settings, get_settings


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite has no timestamptz, so values are stored there as naive UTC and
    given their tzinfo back on load. Naive inputs are taken to be UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def create_engine_for(settings: Settings) -> AsyncEngine:
    """Build the async engine, skipping pool sizing for SQLite."""
    if settings.database_url.startswith("sqlite"):
        return create_async_engine(settings.database_url, echo=settings.db_echo)

    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,
        echo=settings.db_echo,
    )


class Database:
    """Database connection and session management."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = create_engine_for(settings)
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_schema(self) -> None:
        """Create missing tables. Deployments use the alembic revision instead."""
        # Import models to ensure they're registered
        from delayed_jobs.jobs import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()


# Global database instance
_database: Database | None = None


def get_database(settings: Settings | None = None) -> Database:
    """Get or create the global database instance."""
    global _database
    if _database is None:
        _database = Database(settings or get_settings())
    return _database

