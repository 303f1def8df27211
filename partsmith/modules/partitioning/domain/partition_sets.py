"""
Set-level operations: turning a table into a partition set, sub-partitioning,
retention settings, inspection and repair.
"""
from dataclasses import replace
from typing import Optional

import structlog

from partsmith.modules.partitioning.domain.intervals import truncate_for
from partsmith.modules.partitioning.domain.results import OperationResult
from partsmith.modules.partitioning.domain.types import (
    Bound,
    ChildTableDescriptor,
    MigrationOrder,
    PartitionMode,
    PartitionSetConfig,
    PartitionSetInfo,
    RetentionMode,
    SubPartitionTemplate,
)
from partsmith.shared.core.exceptions import (
    DateTimeRangeOverflowError,
    InvalidPartitionConfigError,
)

logger = structlog.get_logger()


class PartitionSetService:
    def __init__(self, catalog, gateway, calculator, lineage, materializer, router, constraints):
        self.catalog = catalog
        self.gateway = gateway
        self.calculator = calculator
        self.lineage = lineage
        self.materializer = materializer
        self.router = router
        self.constraints = constraints

    async def initial_window(
        self, config: PartitionSetConfig, result: OperationResult
    ) -> list[Bound]:
        """Boundaries materialized when a set is created (or found without children)."""
        if config.mode.is_id:
            interval = config.id_interval
            top = await self.lineage.top_managed_ancestor(config.parent_table)
            observed = await self.gateway.max_control(top, config.control) or 0
            start = observed - (observed % interval)
            values = [start + step * interval for step in range(config.premake + 1)]
            values += [
                start - step * interval
                for step in range(1, config.premake + 1)
                if start - step * interval >= 0
            ]
            return values

        interval = config.time_interval
        now = self.calculator.now()
        values: list[Bound] = []
        try:
            current = truncate_for(interval, interval.shift(now, -config.premake))
            end = interval.shift(now, config.premake)
            while current <= end:
                values.append(current)
                current = interval.shift(current, 1)
        except DateTimeRangeOverflowError as e:
            result.warn("partition_boundary_overflow", error=e.message)
        return values

    async def materialize_window(self, config: PartitionSetConfig, result: OperationResult) -> bool:
        created = await self.materializer.create_partitions(
            config, await self.initial_window(config, result), result
        )
        if not created:
            bounds = await self.materializer.parent_range(config)
            if bounds is not None:
                fallback = self.materializer.walk_into_range(config, bounds)
                created = await self.materializer.create_partitions(config, [fallback], result)
        return created

    async def create_parent(self, config: PartitionSetConfig) -> OperationResult:
        config = config.validated()
        result = OperationResult("create_parent", config.parent_table)
        if not await self.gateway.table_exists(config.parent_table):
            raise InvalidPartitionConfigError(
                f"Parent table {config.parent_table} does not exist",
                details={"parent_table": config.parent_table},
            )
        if not await self.gateway.column_is_not_null(config.parent_table, config.control):
            raise InvalidPartitionConfigError(
                f"Control column {config.control} of {config.parent_table} must be NOT NULL",
                details={"parent_table": config.parent_table, "control": config.control},
            )
        config = await self.catalog.create(config)
        await self._copy_sibling_template(config.parent_table)

        created = await self.materialize_window(config, result)
        await self.router.install(config)
        if created:
            await self.gateway.analyze(config.parent_table)
        result.note("partition_set_created", mode=config.mode.value, children=result.count)
        return result

    async def _copy_sibling_template(self, parent_table: str) -> None:
        """A new sub-parent inherits the sub-partition template its siblings carry."""
        for sibling in await self.lineage.siblings(parent_table):
            template = await self.catalog.get_sub_template(sibling)
            if template is not None:
                await self.catalog.save_sub_template(
                    replace(template, parent_table=parent_table),
                    await self.lineage.siblings(parent_table),
                )
                return

    async def create_sub_parent(self, template: SubPartitionTemplate) -> OperationResult:
        """Sub-partition every child of `template.parent_table` with `template`."""
        top = await self.catalog.require(template.parent_table)
        result = OperationResult("create_sub_parent", top.parent_table)
        siblings = await self.lineage.siblings(top.parent_table)
        template = await self.catalog.save_sub_template(template, siblings)

        children = await self.gateway.list_children(top.parent_table)
        for _, child in self.calculator.order_children(top, children):
            if await self.catalog.get(child) is not None:
                continue
            await self.create_parent(
                template.to_config(
                    child,
                    retention_mode=top.retention_mode,
                    retention_schema=top.retention_schema,
                )
            )
            result.count += 1
        result.note("sub_partition_sets_created", children=result.count)
        return result

    async def set_retention(
        self,
        parent_table: str,
        retention: str,
        mode: Optional[RetentionMode] = None,
        retention_schema: Optional[str] = None,
    ) -> PartitionSetConfig:
        config = await self.catalog.require(parent_table)
        mode = RetentionMode(mode) if mode else config.retention_mode
        updated = await self.catalog.update(
            replace(
                config,
                retention=str(retention),
                retention_mode=mode,
                retention_schema=retention_schema if mode is RetentionMode.ARCHIVE else None,
            )
        )
        logger.info("retention_set", parent_table=parent_table, retention=retention, mode=mode.value)
        return updated

    async def remove_retention(self, parent_table: str) -> PartitionSetConfig:
        config = await self.catalog.require(parent_table)
        updated = await self.catalog.update(replace(config, retention=None, retention_schema=None))
        logger.info("retention_removed", parent_table=parent_table)
        return updated

    async def _describe(self, config: PartitionSetConfig, child: str, ranges: dict) -> ChildTableDescriptor:
        if child in ranges:
            lower, upper = ranges[child]
        else:
            lower = self.calculator.child_lower(config, child)
            upper = self.calculator.shift(config, lower, 1) if lower is not None else None
        return ChildTableDescriptor(
            table=child,
            lower=lower,
            upper=upper,
            rows=await self.gateway.count_rows(child),
            bytes_on_disk=await self.gateway.relation_size(child),
        )

    async def list_children(
        self, parent_table: str, order: MigrationOrder = MigrationOrder.ASCENDING
    ) -> list[ChildTableDescriptor]:
        config = await self.catalog.require(parent_table)
        ranges = {}
        if config.mode is PartitionMode.TIME_CUSTOM:
            ranges = {
                entry.child_table: (entry.start, entry.end)
                for entry in await self.catalog.list_custom_ranges(parent_table)
            }
        descriptors = [
            await self._describe(config, child, ranges)
            for child in await self.gateway.list_children(parent_table)
        ]
        if MigrationOrder(order) is MigrationOrder.ASCENDING:
            return sorted(descriptors, key=lambda d: d.order_key)
        bounded = sorted(
            (d for d in descriptors if d.lower is not None), key=lambda d: d.lower, reverse=True
        )
        return bounded + [d for d in descriptors if d.lower is None]

    async def info(self, parent_table: str) -> PartitionSetInfo:
        config = await self.catalog.require(parent_table)
        children = await self.list_children(parent_table)
        bounded = [child for child in children if child.lower is not None]
        return PartitionSetInfo(
            config=config,
            sub_template=await self.catalog.get_sub_template(parent_table),
            children=len(children),
            total_rows=sum(child.rows for child in children),
            total_bytes=sum(child.bytes_on_disk for child in children),
            parent_rows=await self.gateway.count_rows(parent_table),
            newest_child=bounded[-1].table if bounded else None,
            oldest_child=bounded[0].table if bounded else None,
        )

    async def check_parents(self) -> dict[str, int]:
        """Rows sitting in ONLY the parent of each set; sets with none are left out."""
        leftovers = {}
        for config in await self.catalog.list_configs():
            rows = await self.gateway.count_rows(config.parent_table)
            if rows:
                leftovers[config.parent_table] = rows
        return leftovers

    async def reapply_privileges(self, parent_table: str) -> int:
        await self.catalog.require(parent_table)
        children = await self.gateway.list_children(parent_table)
        for child in children:
            await self.materializer.sync_privileges(parent_table, child)
        logger.info("privileges_reapplied", parent_table=parent_table, children=len(children))
        return len(children)

    async def apply_constraints(self, parent_table: str) -> bool:
        return await self.constraints.apply(await self.catalog.require(parent_table))

    async def on_demand_premake(self, parent_table: str, value: Bound) -> OperationResult:
        """
        Create partitions ahead of `value` until `premake` exist beyond its
        partition. Called for static sets that run without scheduled
        maintenance, when an insert lands in the upper half of its partition.
        """
        config = await self.catalog.require(parent_table)
        result = OperationResult("on_demand_premake", parent_table)
        if config.undo_in_progress:
            return result.skip("undo_in_progress")
        ordered = self.calculator.order_children(
            config, await self.gateway.list_children(parent_table)
        )
        if not ordered:
            return result.skip("no_children")

        newest = ordered[-1][0]
        value_lower = self.calculator.lower_bound(config, value)
        try:
            if value >= self.calculator.shift(config, newest, 1):
                return result.skip("value_beyond_newest_partition", value=str(value))
            while self.calculator.steps_between(config, value_lower, newest) < config.premake:
                newest = self.calculator.shift(config, newest, 1)
                if await self.materializer.create_partitions(config, [newest], result):
                    await self.router.refresh(config)
                    await self.constraints.apply(config)
        except DateTimeRangeOverflowError as e:
            result.warn("partition_boundary_overflow", error=e.message)
        if result.count:
            await self.gateway.analyze(parent_table)
        return result
