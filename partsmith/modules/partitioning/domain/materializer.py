"""
Table Materializer.

Creates bounded child tables for a partition set. Creation is idempotent:
a boundary whose child already exists is skipped without error, so
maintenance, on-demand premake and migration can race on the same
boundary and still produce exactly one child.
"""
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog

from partsmith.modules.partitioning.domain import naming
from partsmith.modules.partitioning.domain.boundaries import Boundary
from partsmith.modules.partitioning.domain.results import OperationResult
from partsmith.modules.partitioning.domain.types import (
    Bound,
    CustomIntervalRange,
    PartitionMode,
    PartitionSetConfig,
)
from partsmith.shared.core.exceptions import DateTimeRangeOverflowError
from partsmith.shared.core.ops_metrics import PARTITIONS_CREATED

logger = structlog.get_logger()

SetCreator = Callable[[PartitionSetConfig], Awaitable[Any]]


class TableMaterializer:
    def __init__(self, catalog, gateway, calculator, lineage):
        self.catalog = catalog
        self.gateway = gateway
        self.calculator = calculator
        self.lineage = lineage
        # Turns a freshly created child into its own partition set (sub-partitioning)
        self.set_creator: Optional[SetCreator] = None

    async def parent_range(self, config: PartitionSetConfig) -> Optional[tuple[Bound, Bound]]:
        """
        [lower, upper) of `config.parent_table` inside its managed parent.

        None when the table is a top-level set, or when the parent partitions
        on a different kind of value so its bounds cannot clamp ours.
        """
        parent = await self.lineage.managed_parent(config.parent_table)
        if parent is None:
            return None
        parent_config = await self.catalog.get(parent)
        if parent_config is None or parent_config.mode.is_id != config.mode.is_id:
            return None
        if parent_config.mode is PartitionMode.TIME_CUSTOM:
            for entry in await self.catalog.list_custom_ranges(parent):
                if entry.child_table == config.parent_table:
                    return entry.start, entry.end
            return None
        lower = self.calculator.child_lower(parent_config, config.parent_table)
        if lower is None:
            return None
        return lower, self.calculator.shift(parent_config, lower, 1)

    def walk_into_range(self, config: PartitionSetConfig, bounds: tuple[Bound, Bound]) -> Bound:
        """The boundary nearest the parent's start that lies inside `bounds`."""
        parent_lower, parent_upper = bounds
        lower = self.calculator.lower_bound(config, parent_lower)
        while lower < parent_lower:
            lower = self.calculator.shift(config, lower, 1)
        while lower >= parent_upper:
            lower = self.calculator.shift(config, lower, -1)
        return lower

    async def create_partitions(
        self,
        config: PartitionSetConfig,
        values: Iterable[Bound],
        result: Optional[OperationResult] = None,
    ) -> bool:
        """
        Create the child owning each value. Returns True if at least one
        child was created.
        """
        result = result or OperationResult("create_partition", config.parent_table)
        bounds = await self.parent_range(config)
        created = False
        for value in values:
            try:
                boundary = self.calculator.boundary(config, value)
            except DateTimeRangeOverflowError as e:
                result.warn("partition_boundary_overflow", value=str(value), error=e.message)
                continue
            if config.mode.is_id and boundary.lower < 0:
                continue
            if bounds is not None and not (bounds[0] <= boundary.lower < bounds[1]):
                logger.debug(
                    "partition_outside_parent_range",
                    parent_table=config.parent_table,
                    partition=boundary.table,
                )
                continue
            if await self.gateway.table_exists(boundary.table):
                continue
            await self._materialize(config, boundary)
            result.count += 1
            created = True
        return created

    async def _materialize(self, config: PartitionSetConfig, boundary: Boundary) -> None:
        parent, child = config.parent_table, boundary.table
        await self.gateway.create_child_table(parent, child)
        await self.gateway.add_range_constraint(
            child,
            naming.check_constraint_name(child),
            config.control,
            boundary.lower,
            boundary.upper,
        )
        await self.gateway.inherit(child, parent)
        if config.mode is PartitionMode.TIME_CUSTOM:
            await self.catalog.add_custom_range(
                CustomIntervalRange(
                    parent_table=parent,
                    child_table=child,
                    start=boundary.lower,
                    end=boundary.upper,
                )
            )
        await self.sync_privileges(parent, child)
        if config.inherit_fk:
            await self.copy_foreign_keys(parent, child)

        PARTITIONS_CREATED.labels(parent_table=parent, mode=config.mode.value).inc()
        logger.info(
            "partition_created",
            parent_table=parent,
            partition=child,
            lower=str(boundary.lower),
            upper=str(boundary.upper),
        )

        template = await self.catalog.get_sub_template(parent)
        if template is not None and self.set_creator is not None:
            await self.set_creator(
                template.to_config(
                    child,
                    retention_mode=config.retention_mode,
                    retention_schema=config.retention_schema,
                )
            )

    async def sync_privileges(self, parent_table: str, child_table: str) -> None:
        """Make the child's owner and grants match the parent's exactly."""
        owner = await self.gateway.table_owner(parent_table)
        if owner and owner != await self.gateway.table_owner(child_table):
            await self.gateway.set_owner(child_table, owner)

        parent_grants = await self.gateway.table_grants(parent_table)
        child_grants = await self.gateway.table_grants(child_table)
        for grantee, privileges in parent_grants.items():
            await self.gateway.grant(child_table, grantee, privileges - child_grants.get(grantee, set()))
        for grantee, privileges in child_grants.items():
            await self.gateway.revoke(child_table, grantee, privileges - parent_grants.get(grantee, set()))

    async def copy_foreign_keys(self, parent_table: str, child_table: str) -> None:
        # Sub-partitions take their foreign keys from the top of the hierarchy
        source = await self.lineage.top_managed_ancestor(parent_table, same_mode_family=False)
        for definition in await self.gateway.foreign_key_definitions(source):
            await self.gateway.add_foreign_key(child_table, definition)
