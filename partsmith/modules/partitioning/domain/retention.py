"""
Retention Reaper.

Retires children whose whole range has aged past the retention threshold,
oldest first. A child is always detached from the parent before anything
else happens to it, so routing can no longer target it.
"""
from typing import Optional, Union

import structlog

from partsmith.modules.partitioning.domain.intervals import TimeInterval
from partsmith.modules.partitioning.domain.results import OperationResult
from partsmith.modules.partitioning.domain.types import (
    Bound,
    PartitionMode,
    PartitionSetConfig,
    RetentionMode,
)
from partsmith.shared.core.exceptions import (
    DateTimeRangeOverflowError,
    InvalidPartitionConfigError,
)
from partsmith.shared.core.locks import DROP_ID_LOCK, DROP_TIME_LOCK
from partsmith.shared.core.ops_metrics import PARTITIONS_REAPED

logger = structlog.get_logger()


class RetentionReaper:
    def __init__(self, catalog, gateway, calculator, lineage, locks):
        self.catalog = catalog
        self.gateway = gateway
        self.calculator = calculator
        self.lineage = lineage
        self.locks = locks

    async def _ordered_children(self, config: PartitionSetConfig) -> list[tuple[Bound, Bound, str]]:
        if config.mode is PartitionMode.TIME_CUSTOM:
            children = set(await self.gateway.list_children(config.parent_table))
            return [
                (entry.start, entry.end, entry.child_table)
                for entry in await self.catalog.list_custom_ranges(config.parent_table)
                if entry.child_table in children
            ]
        ordered = self.calculator.order_children(
            config, await self.gateway.list_children(config.parent_table)
        )
        return [(lower, self.calculator.shift(config, lower, 1), child) for lower, child in ordered]

    async def drop_eligible(
        self,
        config: Union[PartitionSetConfig, str],
        retention: Optional[str] = None,
        mode: Optional[RetentionMode] = None,
        retention_schema: Optional[str] = None,
    ) -> OperationResult:
        """
        Reap every child older than the retention threshold.

        `retention`, `mode` and `retention_schema` override the stored
        configuration for this call only.
        """
        if isinstance(config, str):
            config = await self.catalog.require(config)
        kind = "id" if config.mode.is_id else "time"
        result = OperationResult(f"drop_partition_{kind}", config.parent_table)

        retention = retention or config.retention
        if not retention:
            return result.skip("retention_not_configured")
        mode = RetentionMode(mode) if mode else config.retention_mode
        retention_schema = retention_schema or config.retention_schema
        if mode is RetentionMode.ARCHIVE and not retention_schema:
            raise InvalidPartitionConfigError(
                "Archive retention requires a retention_schema",
                details={"parent_table": config.parent_table},
            )

        lock_name = DROP_ID_LOCK if config.mode.is_id else DROP_TIME_LOCK
        async with self.locks.try_acquire(lock_name) as acquired:
            if not acquired:
                return result.skip("retention_lock_held", lock=lock_name)

            if config.mode.is_id:
                threshold = int(retention)
                observed_max = await self.gateway.max_control(config.parent_table, config.control)
                if observed_max is None:
                    return result

                def eligible(upper: Bound) -> bool:
                    return threshold <= observed_max - upper
            else:
                age = TimeInterval.parse(retention)
                now = self.calculator.now()

                def eligible(upper: Bound) -> bool:
                    return age.shift(upper) < now

            for lower, upper, child in await self._ordered_children(config):
                try:
                    if not eligible(upper):
                        break
                except DateTimeRangeOverflowError as e:
                    result.warn("retention_boundary_overflow", partition=child, error=e.message)
                    break
                await self._reap(config, child, mode, retention_schema)
                result.count += 1
        return result

    async def _reap(
        self,
        config: PartitionSetConfig,
        child: str,
        mode: RetentionMode,
        retention_schema: Optional[str],
    ) -> None:
        # Catalog rows of sub-partition sets under the child go with it
        managed = [child] + await self.lineage.descendants(child)

        await self.gateway.no_inherit(child, config.parent_table)
        if mode is RetentionMode.DROP:
            await self.gateway.drop_table(child)
        elif mode is RetentionMode.ARCHIVE:
            await self.gateway.set_schema(child, retention_schema)
        elif mode is RetentionMode.DROP_INDEXES:
            await self.gateway.drop_indexes(child)

        if config.mode is PartitionMode.TIME_CUSTOM:
            await self.catalog.delete_custom_range(config.parent_table, child)
        await self.catalog.delete(managed)

        PARTITIONS_REAPED.labels(parent_table=config.parent_table, retention_mode=mode.value).inc()
        logger.info(
            "partition_reaped",
            parent_table=config.parent_table,
            partition=child,
            retention_mode=mode.value,
        )
