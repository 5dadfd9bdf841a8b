"""
Database Session Management - Async SQLAlchemy session factory.

One engine per process backs the local persistent store.
"""

from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tokengate.config import settings
from tokengate.db.models import Base
from tokengate.observability.logging import get_logger
from tokengate.observability.tracing import instrument_sqlalchemy

logger = get_logger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None

# Session factory
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options() -> dict[str, Any]:
    """Pool options; SQLite uses its own pool and takes no sizing arguments."""
    if settings.is_sqlite:
        return {}
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_pre_ping": True,
    }


def get_engine() -> AsyncEngine:
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.log_level.upper() == "DEBUG",
            **_engine_options(),
        )
        instrument_sqlalchemy(_engine)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def init_db() -> None:
    """Create the schema if it does not exist yet."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name)


async def close_engines() -> None:
    """Close the database engine (for graceful shutdown)."""
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
