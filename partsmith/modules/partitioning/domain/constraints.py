"""
Constraint columns.

Older children stop receiving rows once they fall behind the premake window.
Their min/max over each configured constraint column is then pinned with a
CHECK constraint so the planner can exclude them for queries on columns
other than the control column.
"""
from typing import Optional

import structlog

from partsmith.modules.partitioning.domain import naming
from partsmith.modules.partitioning.domain.types import PartitionMode, PartitionSetConfig
from partsmith.shared.core.exceptions import DateTimeRangeOverflowError

logger = structlog.get_logger()


class ConstraintApplier:
    def __init__(self, gateway, calculator):
        self.gateway = gateway
        self.calculator = calculator

    async def target_child(self, config: PartitionSetConfig) -> Optional[str]:
        """The child premake*2+1 intervals behind the newest child, if it exists."""
        ordered = self.calculator.order_children(
            config, await self.gateway.list_children(config.parent_table)
        )
        if not ordered:
            return None
        distance = config.premake * 2 + 1
        if config.mode is PartitionMode.TIME_CUSTOM:
            position = len(ordered) - 1 - distance
            return ordered[position][1] if position >= 0 else None
        try:
            target_lower = self.calculator.shift(config, ordered[-1][0], -distance)
        except DateTimeRangeOverflowError:
            return None
        for lower, child in ordered:
            if lower == target_lower:
                return child
        return None

    async def apply(self, config: PartitionSetConfig) -> bool:
        if not config.constraint_cols:
            return False
        child = await self.target_child(config)
        if child is None:
            return False

        applied = False
        for column in config.constraint_cols:
            constraint = naming.column_constraint_name(child, column)
            if await self.gateway.constraint_exists(child, constraint):
                continue
            low, high = await self.gateway.control_bounds(child, column)
            if low is None:
                continue
            await self.gateway.add_range_constraint(
                child, constraint, column, low, high, upper_inclusive=True
            )
            applied = True
            logger.info("constraint_applied", partition=child, column=column, constraint=constraint)

        if applied:
            await self.gateway.analyze(child)
        return applied
