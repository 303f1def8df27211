"""
Partition Set Catalog.

Repository over the part_config / part_config_sub / custom_time_partitions
tables. Every read goes to the database: two engine processes may share one
catalog, so nothing is cached between calls.
"""
from datetime import datetime
from typing import Iterable, Optional, Sequence

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from partsmith.models.partition_config import CustomTimePartition, PartConfig, PartConfigSub
from partsmith.modules.partitioning.domain.types import (
    CustomIntervalRange,
    PartitionMode,
    PartitionSetConfig,
    RetentionMode,
    SubPartitionTemplate,
)
from partsmith.shared.core.exceptions import (
    ConfigurationMissingError,
    InvalidPartitionConfigError,
    SubPartitionTemplateMismatchError,
)

logger = structlog.get_logger()


def _to_config(row: PartConfig) -> PartitionSetConfig:
    return PartitionSetConfig(
        parent_table=row.parent_table,
        mode=PartitionMode(row.partition_type),
        control=row.control,
        interval=row.part_interval,
        premake=row.premake,
        constraint_cols=tuple(row.constraint_cols or ()),
        retention=row.retention,
        retention_mode=RetentionMode(row.retention_mode),
        retention_schema=row.retention_schema,
        inherit_fk=row.inherit_fk,
        use_scheduled_maintenance=row.use_run_maintenance,
        undo_in_progress=row.undo_in_progress,
        datetime_string=row.datetime_string,
    )


def _apply_config(row: PartConfig, config: PartitionSetConfig) -> None:
    row.control = config.control
    row.partition_type = config.mode.value
    row.part_interval = config.interval
    row.premake = config.premake
    row.constraint_cols = list(config.constraint_cols) or None
    row.retention = config.retention
    row.retention_mode = config.retention_mode.value
    row.retention_schema = config.retention_schema
    row.inherit_fk = config.inherit_fk
    row.use_run_maintenance = config.use_scheduled_maintenance
    row.undo_in_progress = config.undo_in_progress
    row.datetime_string = config.datetime_string


def _to_template(row: PartConfigSub) -> SubPartitionTemplate:
    return SubPartitionTemplate(
        parent_table=row.sub_parent,
        mode=PartitionMode(row.sub_type),
        control=row.sub_control,
        interval=row.sub_part_interval,
        premake=row.sub_premake,
        constraint_cols=tuple(row.sub_constraint_cols or ()),
        retention=row.sub_retention,
        inherit_fk=row.sub_inherit_fk,
        use_scheduled_maintenance=row.sub_use_run_maintenance,
    )


class PartitionCatalog:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _row(self, parent_table: str) -> Optional[PartConfig]:
        result = await self.db.execute(
            select(PartConfig).where(PartConfig.parent_table == parent_table)
        )
        return result.scalar_one_or_none()

    async def get(self, parent_table: str) -> Optional[PartitionSetConfig]:
        row = await self._row(parent_table)
        return _to_config(row) if row is not None else None

    async def require(self, parent_table: str) -> PartitionSetConfig:
        config = await self.get(parent_table)
        if config is None:
            raise ConfigurationMissingError(
                f"No partition set is configured for {parent_table}",
                details={"parent_table": parent_table},
            )
        return config

    async def list_configs(
        self,
        *,
        scheduled_only: bool = False,
        with_retention: bool = False,
    ) -> list[PartitionSetConfig]:
        query = select(PartConfig).order_by(PartConfig.parent_table)
        if scheduled_only:
            query = query.where(PartConfig.use_run_maintenance.is_(True))
        if with_retention:
            query = query.where(PartConfig.retention.is_not(None))
        result = await self.db.execute(query)
        return [_to_config(row) for row in result.scalars().all()]

    async def create(self, config: PartitionSetConfig) -> PartitionSetConfig:
        config = config.validated()
        if await self._row(config.parent_table) is not None:
            raise InvalidPartitionConfigError(
                f"{config.parent_table} is already a partition set",
                details={"parent_table": config.parent_table},
            )
        row = PartConfig(parent_table=config.parent_table)
        _apply_config(row, config)
        self.db.add(row)
        await self.db.flush()
        logger.info(
            "partition_set_configured",
            parent_table=config.parent_table,
            mode=config.mode.value,
            interval=config.interval,
            premake=config.premake,
        )
        return config

    async def update(self, config: PartitionSetConfig) -> PartitionSetConfig:
        config = config.validated()
        row = await self._row(config.parent_table)
        if row is None:
            raise ConfigurationMissingError(
                f"No partition set is configured for {config.parent_table}",
                details={"parent_table": config.parent_table},
            )
        _apply_config(row, config)
        await self.db.flush()
        return config

    async def set_undo_in_progress(self, parent_table: str, in_progress: bool) -> None:
        row = await self._row(parent_table)
        if row is None:
            raise ConfigurationMissingError(
                f"No partition set is configured for {parent_table}",
                details={"parent_table": parent_table},
            )
        row.undo_in_progress = in_progress
        await self.db.flush()

    async def delete(self, parent_tables: Iterable[str]) -> int:
        """Remove configurations together with their templates and custom ranges."""
        targets = list(dict.fromkeys(parent_tables))
        if not targets:
            return 0
        await self.db.execute(
            delete(PartConfigSub).where(PartConfigSub.sub_parent.in_(targets))
        )
        await self.db.execute(
            delete(CustomTimePartition).where(CustomTimePartition.parent_table.in_(targets))
        )
        result = await self.db.execute(
            delete(PartConfig).where(PartConfig.parent_table.in_(targets))
        )
        removed = int(result.rowcount or 0)
        if removed:
            logger.info("partition_set_removed", parent_tables=targets, count=removed)
        return removed

    # --- Sub-partition templates ---

    async def get_sub_template(self, parent_table: str) -> Optional[SubPartitionTemplate]:
        result = await self.db.execute(
            select(PartConfigSub).where(PartConfigSub.sub_parent == parent_table)
        )
        row = result.scalar_one_or_none()
        return _to_template(row) if row is not None else None

    async def save_sub_template(
        self, template: SubPartitionTemplate, siblings: Sequence[str] = ()
    ) -> SubPartitionTemplate:
        """
        Store the template for `template.parent_table`.

        Every sibling of that parent which already carries a template must
        carry an identical one; multi-level partitioning stays homogeneous
        across one lineage.
        """
        probe = PartitionSetConfig(
            parent_table=template.parent_table,
            mode=template.mode,
            control=template.control,
            interval=template.interval,
            premake=template.premake,
            constraint_cols=template.constraint_cols,
            retention=template.retention,
            inherit_fk=template.inherit_fk,
            use_scheduled_maintenance=template.use_scheduled_maintenance,
        ).validated()
        template = SubPartitionTemplate(
            parent_table=template.parent_table,
            mode=probe.mode,
            control=probe.control,
            interval=probe.interval,
            premake=probe.premake,
            constraint_cols=tuple(probe.constraint_cols),
            retention=probe.retention,
            inherit_fk=probe.inherit_fk,
            use_scheduled_maintenance=probe.use_scheduled_maintenance,
        )
        if await self._row(template.parent_table) is None:
            raise ConfigurationMissingError(
                f"No partition set is configured for {template.parent_table}",
                details={"parent_table": template.parent_table},
            )

        for sibling in siblings:
            if sibling == template.parent_table:
                continue
            existing = await self.get_sub_template(sibling)
            if existing is not None and existing.shape() != template.shape():
                raise SubPartitionTemplateMismatchError(
                    f"Sub-partition template for {template.parent_table} differs from sibling {sibling}",
                    details={"parent_table": template.parent_table, "sibling": sibling},
                )

        result = await self.db.execute(
            select(PartConfigSub).where(PartConfigSub.sub_parent == template.parent_table)
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = PartConfigSub(sub_parent=template.parent_table)
            self.db.add(row)
        row.sub_type = template.mode.value
        row.sub_control = template.control
        row.sub_part_interval = template.interval
        row.sub_constraint_cols = list(template.constraint_cols) or None
        row.sub_premake = template.premake
        row.sub_inherit_fk = template.inherit_fk
        row.sub_retention = template.retention
        row.sub_use_run_maintenance = template.use_scheduled_maintenance
        await self.db.flush()
        logger.info(
            "sub_partition_template_saved",
            parent_table=template.parent_table,
            mode=template.mode.value,
            interval=template.interval,
        )
        return template

    # --- Custom interval ranges ---

    async def add_custom_range(self, entry: CustomIntervalRange) -> None:
        self.db.add(
            CustomTimePartition(
                parent_table=entry.parent_table,
                child_table=entry.child_table,
                range_start=entry.start,
                range_end=entry.end,
            )
        )
        await self.db.flush()

    async def find_custom_range(
        self, parent_table: str, value: datetime
    ) -> Optional[CustomIntervalRange]:
        result = await self.db.execute(
            select(CustomTimePartition)
            .where(CustomTimePartition.parent_table == parent_table)
            .where(CustomTimePartition.range_start <= value)
            .where(CustomTimePartition.range_end > value)
            .limit(1)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return CustomIntervalRange(
            parent_table=row.parent_table,
            child_table=row.child_table,
            start=row.range_start,
            end=row.range_end,
        )

    async def list_custom_ranges(self, parent_table: str) -> list[CustomIntervalRange]:
        result = await self.db.execute(
            select(CustomTimePartition)
            .where(CustomTimePartition.parent_table == parent_table)
            .order_by(CustomTimePartition.range_start)
        )
        return [
            CustomIntervalRange(
                parent_table=row.parent_table,
                child_table=row.child_table,
                start=row.range_start,
                end=row.range_end,
            )
            for row in result.scalars().all()
        ]

    async def delete_custom_range(self, parent_table: str, child_table: str) -> None:
        await self.db.execute(
            delete(CustomTimePartition)
            .where(CustomTimePartition.parent_table == parent_table)
            .where(CustomTimePartition.child_table == child_table)
        )
