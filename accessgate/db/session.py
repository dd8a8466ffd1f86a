"""
Async engine and session factory for the configuration and audit tables.

There is one engine per process. The repository and the audit store open
a short-lived session from the shared factory for every operation.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from accessgate.core.config import Settings, get_settings
from accessgate.core.logging import get_logger

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(settings: Settings | None = None) -> async_sessionmaker[AsyncSession]:
    """Create the engine once; later calls return the existing session factory."""
    global _engine, _session_factory

    if _session_factory is not None:
        return _session_factory

    settings = settings or get_settings()
    _engine = create_async_engine(
        str(settings.database_url),
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_pre_ping=True,
        echo=settings.debug,
        connect_args={"server_settings": {"application_name": settings.project_name}},
    )
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    logger.info("database_initialized", pool_size=settings.database_pool_size)
    return _session_factory


async def close_db() -> None:
    """Dispose of the engine and its connection pool."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed")
    _engine = None
    _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized; call init_db() first")
    return _session_factory
