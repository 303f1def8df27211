"""
Maintenance Orchestrator.

One pass keeps `premake` future children ahead of the current boundary for
every scheduled partition set, then runs retention for every set that has
a retention threshold. The pass runs under a
single operation lock; a second caller returns immediately. Each set is
maintained inside its own savepoint so a failure in one set never undoes
or stops work on another.
"""
import time
from contextlib import nullcontext
from typing import AsyncContextManager, Callable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from partsmith.modules.partitioning.domain.intervals import truncate_for
from partsmith.modules.partitioning.domain.results import (
    MaintenanceResult,
    OperationResult,
    OperationStatus,
)
from partsmith.modules.partitioning.domain.types import PartitionMode, PartitionSetConfig
from partsmith.shared.core.exceptions import (
    DateTimeRangeOverflowError,
    InconsistentPartitionDataError,
    PartsmithException,
)
from partsmith.shared.core.locks import MAINTENANCE_LOCK
from partsmith.shared.core.ops_metrics import MAINTENANCE_DURATION, MAINTENANCE_RUNS

logger = structlog.get_logger()

Savepoint = Callable[[], AsyncContextManager]


class MaintenanceOrchestrator:
    def __init__(
        self,
        catalog,
        gateway,
        calculator,
        materializer,
        router,
        constraints,
        partition_sets,
        reaper,
        locks,
        savepoint: Optional[Savepoint] = None,
    ):
        self.catalog = catalog
        self.gateway = gateway
        self.calculator = calculator
        self.materializer = materializer
        self.router = router
        self.constraints = constraints
        self.partition_sets = partition_sets
        self.reaper = reaper
        self.locks = locks
        self.savepoint = savepoint or nullcontext

    async def run(self, parent_table: Optional[str] = None) -> MaintenanceResult:
        """
        Maintain one set (any set, scheduled or not) or every scheduled set.
        """
        result = MaintenanceResult("run_maintenance", parent_table)
        started = time.perf_counter()
        async with self.locks.try_acquire(MAINTENANCE_LOCK) as acquired:
            if not acquired:
                MAINTENANCE_RUNS.labels(status=OperationStatus.SKIPPED.value).inc()
                return result.skip("maintenance_lock_held")

            if parent_table is not None:
                configs = [await self.catalog.require(parent_table)]
            else:
                configs = await self.catalog.list_configs(scheduled_only=True)

            for config in configs:
                set_result = OperationResult("maintain_partition_set", config.parent_table)
                if config.undo_in_progress:
                    set_result.skip("undo_in_progress")
                else:
                    await self._isolated(self._maintain, config, set_result)
                result.created += set_result.count
                result.sets.append(set_result)

            # Sub-partition sets created above are picked up by a fresh read.
            # Retention covers every set with a threshold, scheduled or not.
            if parent_table is not None:
                reapable = [await self.catalog.require(parent_table)]
            else:
                reapable = await self.catalog.list_configs(with_retention=True)
            for config in reapable:
                if not config.retention or config.undo_in_progress:
                    continue
                reap_result = await self._isolated(self.reaper.drop_eligible, config)
                result.dropped += max(reap_result.count, 0)
                result.sets.append(reap_result)

        result.count = result.created
        if any(s.status in (OperationStatus.FAILED, OperationStatus.PARTIAL) for s in result.sets):
            result.status = OperationStatus.PARTIAL
        MAINTENANCE_RUNS.labels(status=result.status.value).inc()
        MAINTENANCE_DURATION.observe(time.perf_counter() - started)
        logger.info(
            "maintenance_completed",
            parent_table=parent_table,
            status=result.status.value,
            created=result.created,
            dropped=result.dropped,
            sets=len(configs),
        )
        return result

    async def _isolated(self, operation, config: PartitionSetConfig, *args) -> OperationResult:
        """Run one set's work in a savepoint; failures are recorded, not raised."""
        fallback = args[0] if args else OperationResult(operation.__name__, config.parent_table)
        try:
            async with self.savepoint():
                outcome = await operation(config, *args)
        except InconsistentPartitionDataError as e:
            fallback.warn("inconsistent_partition_data", error=e.message, **e.details)
            return fallback
        except (PartsmithException, SQLAlchemyError) as e:
            # The savepoint rolled back anything counted so far
            fallback.count = 0
            fallback.fail("partition_set_maintenance_failed", error=str(e))
            return fallback
        return outcome if isinstance(outcome, OperationResult) else fallback

    async def _maintain(self, config: PartitionSetConfig, result: OperationResult) -> OperationResult:
        ordered = self.calculator.order_children(
            config, await self.gateway.list_children(config.parent_table)
        )
        if not ordered:
            # A set that lost all its children gets its creation window back
            if await self.partition_sets.materialize_window(config, result):
                await self.router.refresh(config)
                await self.gateway.analyze(config.parent_table)
            return result

        newest = ordered[-1][0]
        bounds = await self.materializer.parent_range(config)
        if bounds is not None and self.calculator.shift(config, newest, 1) >= bounds[1]:
            result.note("sub_partition_set_full")
            return result
        if config.mode.is_id:
            current = await self._current_id_lower(config, newest)
        else:
            current = await self._current_time_lower(config)

        premade = self.calculator.steps_between(config, current, newest)
        created = False
        try:
            while premade < config.premake:
                candidate = self.calculator.shift(config, newest, 1)
                if bounds is not None and candidate >= bounds[1]:
                    result.note("sub_partition_set_full")
                    break
                newest = candidate
                premade += 1
                if await self.materializer.create_partitions(config, [newest], result):
                    created = True
                    await self.router.refresh(config)
                    await self.constraints.apply(config)
        except DateTimeRangeOverflowError as e:
            result.warn("partition_boundary_overflow", error=e.message)

        if created:
            await self.gateway.analyze(config.parent_table)
        return result

    async def _current_time_lower(self, config: PartitionSetConfig):
        if config.mode is not PartitionMode.TIME_CUSTOM:
            return await self.calculator.current_lower(config)
        now = self.calculator.now()
        found = await self.catalog.find_custom_range(config.parent_table, now)
        return found.start if found is not None else truncate_for(config.time_interval, now)

    async def _current_id_lower(self, config: PartitionSetConfig, newest: int) -> int:
        observed_max = await self.gateway.max_control(config.parent_table, config.control) or 0
        newest_upper = self.calculator.shift(config, newest, 1)
        if observed_max >= newest_upper:
            raise InconsistentPartitionDataError(
                f"Max {config.control} in {config.parent_table} is beyond the newest child of {config.parent_table}",
                details={"observed_max": observed_max, "newest_upper": newest_upper},
            )
        return self.calculator.lower_bound(config, observed_max)
