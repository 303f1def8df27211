"""
Data Migrator.

Moves rows that sit in the parent table into the children that should own
them, one partition-sized batch at a time.
"""
from typing import Optional, Union

import structlog

from partsmith.modules.partitioning.domain.intervals import TimeInterval, parse_id_interval
from partsmith.modules.partitioning.domain.results import OperationResult
from partsmith.modules.partitioning.domain.types import (
    Bound,
    MigrationOrder,
    PartitionMode,
    PartitionSetConfig,
)
from partsmith.shared.core.exceptions import DateTimeRangeOverflowError
from partsmith.shared.core.ops_metrics import ROWS_MIGRATED
from partsmith.shared.core.retry import acquire_with_lock_wait

logger = structlog.get_logger()


class DataMigrator:
    def __init__(self, catalog, gateway, calculator, materializer, router):
        self.catalog = catalog
        self.gateway = gateway
        self.calculator = calculator
        self.materializer = materializer
        self.router = router

    def _batch_step(
        self, config: PartitionSetConfig, batch_interval: Optional[Union[str, int]]
    ) -> Optional[Union[TimeInterval, int]]:
        """Batch width, never wider than one partition."""
        if batch_interval is None:
            return None
        if config.mode.is_id:
            return min(parse_id_interval(batch_interval), config.id_interval)
        step = TimeInterval.parse(str(batch_interval))
        if step.approx_seconds >= config.time_interval.approx_seconds:
            return None
        return step

    def _window(
        self, step, value: Bound, lower: Bound, upper: Bound, order: MigrationOrder
    ) -> tuple[Bound, Bound]:
        if order is MigrationOrder.ASCENDING:
            if step is None:
                return value, upper
            end = value + step if isinstance(step, int) else step.shift(value, 1)
            return value, min(end, upper)
        if step is None:
            return lower, upper
        start = value - step if isinstance(step, int) else step.shift(value, -1)
        return max(start, lower), upper

    async def migrate(
        self,
        parent_table: str,
        batch_count: int = 1,
        batch_interval: Optional[Union[str, int]] = None,
        lock_wait_seconds: float = 0,
        order: MigrationOrder = MigrationOrder.ASCENDING,
    ) -> OperationResult:
        config = await self.catalog.require(parent_table)
        order = MigrationOrder(order)
        result = OperationResult("partition_data", parent_table)
        step = self._batch_step(config, batch_interval)
        creation = OperationResult("create_partition", parent_table)

        for _ in range(batch_count):
            low, high = await self.gateway.control_bounds(parent_table, config.control)
            if low is None:
                break
            value = low if order is MigrationOrder.ASCENDING else high
            try:
                boundary = await self.calculator.resolve(config, value)
                if boundary is None:
                    result.warn("no_partition_for_value", value=str(value))
                    break
                window = self._window(step, value, boundary.lower, boundary.upper, order)
            except DateTimeRangeOverflowError as e:
                result.warn("partition_boundary_overflow", value=str(value), error=e.message)
                break

            if lock_wait_seconds > 0:
                locked = await acquire_with_lock_wait(
                    lambda: self.gateway.lock_rows_nowait(
                        parent_table, config.control, window[0], window[1]
                    ),
                    lock_wait_seconds,
                    operation="partition_data",
                )
                if not locked:
                    return result.abort_on_lock_wait(window=[str(window[0]), str(window[1])])

            if config.mode is not PartitionMode.TIME_CUSTOM:
                await self.materializer.create_partitions(config, [boundary.lower], creation)
            if not await self.gateway.table_exists(boundary.table):
                result.warn("partition_not_created", partition=boundary.table)
                break

            moved = await self.gateway.move_rows(
                parent_table, boundary.table, config.control, window[0], window[1]
            )
            if moved == 0:
                break
            ROWS_MIGRATED.labels(direction="into_children").inc(moved)
            result.count += moved
            logger.info(
                "partition_data_moved",
                parent_table=parent_table,
                partition=boundary.table,
                rows=moved,
            )

        result.diagnostics.extend(creation.diagnostics)
        if creation.count:
            await self.router.refresh(config)
            await self.gateway.analyze(parent_table)
        return result
