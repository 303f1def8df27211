"""
Cooperative, non-blocking locks keyed by operation name.

Maintenance, retention and undo each run under a named lock. A second
caller that finds the lock held gets `False` back immediately and is
expected to return without doing any work.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Protocol

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from partsmith.shared.core.config import LOCK_BACKEND_MEMORY, Settings

logger = structlog.get_logger()

MAINTENANCE_LOCK = "run_maintenance"
DROP_TIME_LOCK = "drop_partition_time"
DROP_ID_LOCK = "drop_partition_id"
UNDO_LOCK = "undo_partition"


class LockProvider(Protocol):
    def try_acquire(self, name: str) -> AsyncContextManager[bool]:
        """Yield True if the lock was taken, False if someone else holds it."""
        ...


class AdvisoryLockProvider:
    """
    PostgreSQL transaction-scoped advisory locks.

    The lock is released when the surrounding transaction commits or rolls
    back, so its lifetime is the caller's unit of work.
    """

    def __init__(self, db: AsyncSession, namespace: str = "partsmith"):
        self.db = db
        self.namespace = namespace

    def _key(self, name: str) -> str:
        return f"{self.namespace} {name}"

    @asynccontextmanager
    async def try_acquire(self, name: str) -> AsyncIterator[bool]:
        result = await self.db.execute(
            text("SELECT pg_try_advisory_xact_lock(hashtext(:lock_key))"),
            {"lock_key": self._key(name)},
        )
        acquired = bool(result.scalar())
        if not acquired:
            logger.info("operation_lock_held_elsewhere", lock=self._key(name))
        yield acquired


class InProcessLockProvider:
    """asyncio locks for a single engine process (tests, local tooling)."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def try_acquire(self, name: str) -> AsyncIterator[bool]:
        lock = self._locks.setdefault(name, asyncio.Lock())
        if lock.locked():
            logger.info("operation_lock_held_elsewhere", lock=name)
            yield False
            return
        async with lock:
            yield True


_memory_provider = InProcessLockProvider()


def build_lock_provider(db: AsyncSession, settings: Settings) -> LockProvider:
    if settings.LOCK_BACKEND == LOCK_BACKEND_MEMORY:
        return _memory_provider
    return AdvisoryLockProvider(db, namespace=settings.LOCK_NAMESPACE)
