"""
Periodic maintenance.

One APScheduler cron job per interval class. Each run opens a fresh
session, maintains every scheduled set of that class and commits.
"""
import time
from typing import Callable, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from partsmith.modules.partitioning.domain.engine import PartitionEngine
from partsmith.modules.partitioning.domain.intervals import Granularity
from partsmith.modules.partitioning.domain.types import PartitionMode, PartitionSetConfig
from partsmith.shared.core.config import get_settings
from partsmith.shared.core.ops_metrics import SCHEDULER_JOB_RUNS

logger = structlog.get_logger()

# Interval class -> CronTrigger fields
SCHEDULES: dict[str, dict[str, str]] = {
    "half-hourly": {"minute": "0,30"},
    "hourly": {"minute": "0"},
    "daily": {"hour": "0", "minute": "0"},
    "weekly": {"day_of_week": "mon", "hour": "0", "minute": "0"},
    "monthly": {"day": "1", "hour": "0", "minute": "0"},
    "yearly": {"month": "1", "day": "1", "hour": "0", "minute": "0"},
}

_CLASS_BY_GRANULARITY = {
    Granularity.QUARTER_HOUR: "half-hourly",
    Granularity.HALF_HOUR: "half-hourly",
    Granularity.HOURLY: "hourly",
    Granularity.DAILY: "daily",
    Granularity.WEEKLY: "weekly",
    Granularity.MONTHLY: "monthly",
    Granularity.QUARTERLY: "monthly",
    Granularity.YEARLY: "yearly",
}


def schedule_class(config: PartitionSetConfig) -> str:
    """Interval class whose cron job maintains `config`."""
    if config.mode.is_id or config.mode is PartitionMode.TIME_CUSTOM:
        return "hourly"
    return _CLASS_BY_GRANULARITY[config.time_interval.granularity]


class MaintenanceScheduler:
    """Runs maintenance for each interval class on its own cron schedule."""

    def __init__(
        self,
        session_maker: Callable[[], AsyncSession],
        engine_factory: Callable[[AsyncSession], PartitionEngine] = PartitionEngine.for_session,
        timezone: Optional[str] = None,
    ):
        self.session_maker = session_maker
        self.engine_factory = engine_factory
        self.scheduler = AsyncIOScheduler(timezone=timezone or get_settings().SCHEDULER_TIMEZONE)

    async def maintenance_job(self, interval_class: str) -> int:
        """Maintain every scheduled set of one interval class. Returns partitions created."""
        job_name = f"maintenance_{interval_class}"
        started = time.time()
        created = 0
        try:
            async with self.session_maker() as db:
                engine = self.engine_factory(db)
                for config in await engine.catalog.list_configs(scheduled_only=True):
                    if schedule_class(config) != interval_class:
                        continue
                    result = await engine.run_maintenance(config.parent_table)
                    created += result.created
                await db.commit()
            SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="success").inc()
            logger.info(
                "scheduled_maintenance_completed",
                job=job_name,
                created=created,
                duration_seconds=round(time.time() - started, 3),
            )
        except Exception as e:
            SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="failure").inc()
            logger.error("scheduled_maintenance_failed", job=job_name, error=str(e))
        return created

    def start(self) -> None:
        for interval_class, fields in SCHEDULES.items():
            self.scheduler.add_job(
                self.maintenance_job,
                trigger=CronTrigger(**fields),
                args=[interval_class],
                id=f"maintenance_{interval_class}",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.start()
        logger.info("maintenance_scheduler_started", jobs=list(SCHEDULES))

    def stop(self) -> None:
        self.scheduler.shutdown(wait=False)
        logger.info("maintenance_scheduler_stopped")
