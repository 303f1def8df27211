"""
Boundary Calculator.

Maps a control-column value to the half-open [lower, upper) range of the
child that owns it, and a child name back to its lower bound.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

import structlog

from partsmith.modules.partitioning.domain import naming
from partsmith.modules.partitioning.domain.intervals import (
    format_suffix,
    parse_suffix,
    truncate_for,
)
from partsmith.modules.partitioning.domain.types import (
    Bound,
    PartitionMode,
    PartitionSetConfig,
)
from partsmith.shared.core.exceptions import CustomRangeNotFoundError

logger = structlog.get_logger()


def utc_now() -> datetime:
    """Naive UTC wall clock; partition bounds are stored without a time zone."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class Boundary:
    lower: Bound
    upper: Bound
    suffix: str
    table: str

    def contains(self, value: Bound) -> bool:
        return self.lower <= value < self.upper


def id_lower(value: int, interval: int) -> int:
    return value - (value % interval)


class BoundaryCalculator:
    def __init__(self, catalog, clock: Optional[Callable[[], datetime]] = None):
        self.catalog = catalog
        self.clock = clock or utc_now

    def now(self) -> datetime:
        return self.clock()

    def lower_bound(self, config: PartitionSetConfig, value: Bound) -> Bound:
        """
        Lower bound of the child owning `value`.

        Custom-interval sets have no arithmetic rule; the value passed in is
        taken as the start of its range.
        """
        if config.mode.is_id:
            return id_lower(int(value), config.id_interval)
        if config.mode is PartitionMode.TIME_CUSTOM:
            return value
        return truncate_for(config.time_interval, value)

    def shift(self, config: PartitionSetConfig, lower: Bound, steps: int = 1) -> Bound:
        if config.mode.is_id:
            return int(lower) + steps * config.id_interval
        return config.time_interval.shift(lower, steps)

    def steps_between(self, config: PartitionSetConfig, start: Bound, end: Bound) -> int:
        if config.mode.is_id:
            return (int(end) - int(start)) // config.id_interval
        return config.time_interval.steps_between(start, end)

    def suffix(self, config: PartitionSetConfig, lower: Bound) -> str:
        if config.mode.is_id:
            return str(lower)
        return format_suffix(lower, config.datetime_string)

    def boundary(self, config: PartitionSetConfig, value: Bound) -> Boundary:
        lower = self.lower_bound(config, value)
        upper = self.shift(config, lower, 1)
        suffix = self.suffix(config, lower)
        return Boundary(
            lower=lower,
            upper=upper,
            suffix=suffix,
            table=naming.partition_name(config.parent_table, suffix),
        )

    async def resolve(self, config: PartitionSetConfig, value: Bound) -> Optional[Boundary]:
        """
        Boundary of the child that should hold an already-stored value.

        For custom-interval sets this is a catalog lookup; None means no range
        covers the value and the row stays in the parent.
        """
        if config.mode is not PartitionMode.TIME_CUSTOM:
            return self.boundary(config, value)
        found = await self.catalog.find_custom_range(config.parent_table, value)
        if found is None:
            return None
        return Boundary(
            lower=found.start,
            upper=found.end,
            suffix=naming.partition_suffix(found.child_table) or "",
            table=found.child_table,
        )

    async def current_lower(
        self, config: PartitionSetConfig, observed_max: Optional[int] = None
    ) -> Bound:
        """Lower bound of the partition that is current right now (time) or holds the max id."""
        if config.mode.is_id:
            return id_lower(observed_max or 0, config.id_interval)
        now = self.now()
        if config.mode is PartitionMode.TIME_CUSTOM:
            found = await self.catalog.find_custom_range(config.parent_table, now)
            if found is None:
                raise CustomRangeNotFoundError(
                    f"No custom range of {config.parent_table} covers {now.isoformat()}",
                    details={"parent_table": config.parent_table},
                )
            return found.start
        return truncate_for(config.time_interval, now)

    def child_lower(self, config: PartitionSetConfig, child_table: str) -> Optional[Bound]:
        """Parse a child's lower bound out of its name; None for names that do not fit."""
        suffix = naming.partition_suffix(child_table)
        if suffix is None:
            return None
        if config.mode.is_id:
            try:
                return int(suffix)
            except ValueError:
                return None
        try:
            return parse_suffix(suffix, config.datetime_string)
        except ValueError:
            return None

    def order_children(
        self,
        config: PartitionSetConfig,
        children: Iterable[str],
        *,
        descending: bool = False,
    ) -> list[tuple[Bound, str]]:
        """(lower, table) pairs sorted by bound; children with unreadable names are left out."""
        ordered = []
        for child in children:
            lower = self.child_lower(config, child)
            if lower is None:
                logger.debug("child_suffix_unparseable", parent_table=config.parent_table, child=child)
                continue
            ordered.append((lower, child))
        ordered.sort(key=lambda item: item[0], reverse=descending)
        return ordered
