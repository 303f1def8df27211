from functools import lru_cache
from typing import Any, AsyncGenerator

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from partsmith.shared.core.config import get_settings

logger = structlog.get_logger()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return url.replace(prefix, "postgresql+asyncpg://", 1)
    return url


def _engine_options(settings, url: str) -> dict[str, Any]:
    if "sqlite" in url:
        return {"poolclass": StaticPool, "echo": settings.DB_ECHO}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,
        "echo": settings.DB_ECHO,
        # Routing functions are replaced at runtime; cached plans would go stale.
        "connect_args": {"statement_cache_size": 0},
    }


@lru_cache
def get_engine() -> AsyncEngine:
    """Return the process-wide async engine, built on first use."""
    settings = get_settings()
    url = _normalize_db_url(settings.DATABASE_URL)
    if not url:
        raise ValueError("DATABASE_URL is not set. partsmith cannot connect.")
    engine = create_async_engine(url, **_engine_options(settings, url))
    logger.debug("db_engine_initialized", dialect=engine.dialect.name)
    return engine


@lru_cache
def _session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)


def async_session_maker() -> AsyncSession:
    """Return a new async session bound to the process-wide engine."""
    return _session_factory()()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed on success."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
