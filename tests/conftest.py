"""
Global pytest fixtures for the partsmith test suite.

Provides:
- Test environment variables, set before any partsmith import
- Async database session over SQLite (aiosqlite) with the catalog tables
"""
import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
import structlog

# Set test environment BEFORE any partsmith imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LOCK_BACKEND"] = "memory"
os.environ["API_KEYS"] = "test-api-key"
os.environ["SCHEDULER_ENABLED"] = "false"


def _register_models():
    # Import all models to register them in SQLAlchemy mapper globally for all tests
    import partsmith.models  # noqa: F401


_register_models()


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Keep structlog configuration from leaking between tests."""
    yield
    structlog.reset_defaults()


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    db_url = f"sqlite+aiosqlite:///{tmp_path / 'catalog.sqlite'}"
    engine = create_async_engine(db_url, echo=False)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(async_engine) -> AsyncGenerator:
    """Create the catalog tables and provide an async session."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from partsmith.shared.db.base import Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()
