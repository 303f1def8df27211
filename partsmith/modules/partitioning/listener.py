"""
On-demand premake listener.

Static partition sets that run without scheduled maintenance emit a
NOTIFY from their routing trigger when an insert lands in the upper half
of its partition. This listener receives those notifications and creates
the partitions ahead of the value in a separate session.
"""
import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from partsmith.modules.partitioning.domain.engine import PartitionEngine
from partsmith.modules.partitioning.domain.results import OperationResult
from partsmith.shared.core.config import get_settings

logger = structlog.get_logger()


def parse_payload(payload: str) -> tuple[str, Any]:
    """(parent_table, value) from a trigger notification; timestamps become naive datetimes."""
    data = json.loads(payload)
    value = data["value"]
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return data["parent_table"], value


class PremakeListener:
    def __init__(
        self,
        engine: AsyncEngine,
        session_maker: Callable[[], AsyncSession],
        channel: Optional[str] = None,
        engine_factory: Callable[[AsyncSession], PartitionEngine] = PartitionEngine.for_session,
    ):
        self.engine = engine
        self.session_maker = session_maker
        self.channel = channel or get_settings().PREMAKE_NOTIFY_CHANNEL
        self.engine_factory = engine_factory
        self._connection = None
        self._tasks: set[asyncio.Task] = set()
        # One premake at a time per parent; bursts of inserts notify repeatedly
        self._locks: dict[str, asyncio.Lock] = {}

    async def handle(self, payload: str) -> Optional[OperationResult]:
        try:
            parent_table, value = parse_payload(payload)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("premake_notification_malformed", payload=payload, error=str(e))
            return None

        lock = self._locks.setdefault(parent_table, asyncio.Lock())
        async with lock:
            async with self.session_maker() as db:
                engine = self.engine_factory(db)
                result = await engine.on_demand_premake(parent_table, value)
                await db.commit()
        if result.count:
            logger.info("on_demand_premake_completed", parent_table=parent_table, created=result.count)
        return result

    def _on_notify(self, connection, pid, channel, payload) -> None:
        task = asyncio.ensure_future(self._guarded(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded(self, payload: str) -> None:
        try:
            await self.handle(payload)
        except Exception as e:
            logger.error("on_demand_premake_failed", payload=payload, error=str(e))

    async def start(self) -> None:
        self._connection = await self.engine.connect()
        raw = await self._connection.get_raw_connection()
        await raw.driver_connection.add_listener(self.channel, self._on_notify)
        logger.info("premake_listener_started", channel=self.channel)

    async def stop(self) -> None:
        if self._connection is None:
            return
        raw = await self._connection.get_raw_connection()
        await raw.driver_connection.remove_listener(self.channel, self._on_notify)
        await self._connection.close()
        self._connection = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("premake_listener_stopped", channel=self.channel)
