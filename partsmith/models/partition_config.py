"""
Partition Set Catalog Models

Durable configuration for managed parent tables, their sub-partition
templates, and the explicit ranges of custom-interval sets.
"""

from datetime import datetime
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from partsmith.modules.partitioning.domain.types import PartitionMode, RetentionMode
from partsmith.shared.db.base import Base

_MODE_VALUES = ", ".join(f"'{mode.value}'" for mode in PartitionMode)


class PartConfig(Base):
    """One row per managed parent table."""

    __tablename__ = "part_config"
    __table_args__ = (
        CheckConstraint(f"type IN ({_MODE_VALUES})", name="type"),
        CheckConstraint("premake > 0", name="positive_premake"),
    )

    parent_table: Mapped[str] = mapped_column(String, primary_key=True)
    control: Mapped[str] = mapped_column(String, nullable=False)
    partition_type: Mapped[str] = mapped_column("type", String, nullable=False)
    part_interval: Mapped[str] = mapped_column(String, nullable=False)
    constraint_cols: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    premake: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    inherit_fk: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Retention: interval text (time) or integer text (id); NULL disables reaping
    retention: Mapped[str | None] = mapped_column(String, nullable=True)
    retention_mode: Mapped[str] = mapped_column(
        String, nullable=False, default=RetentionMode.DETACH.value
    )
    retention_schema: Mapped[str | None] = mapped_column(String, nullable=True)

    datetime_string: Mapped[str | None] = mapped_column(String, nullable=True)
    use_run_maintenance: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    undo_in_progress: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class PartConfigSub(Base):
    """Sub-partition template applied to every child created under `sub_parent`."""

    __tablename__ = "part_config_sub"
    __table_args__ = (
        CheckConstraint(f"sub_type IN ({_MODE_VALUES})", name="sub_type"),
        CheckConstraint("sub_premake > 0", name="positive_sub_premake"),
    )

    sub_parent: Mapped[str] = mapped_column(
        String,
        ForeignKey("part_config.parent_table", ondelete="CASCADE"),
        primary_key=True,
    )
    sub_type: Mapped[str] = mapped_column(String, nullable=False)
    sub_control: Mapped[str] = mapped_column(String, nullable=False)
    sub_part_interval: Mapped[str] = mapped_column(String, nullable=False)
    sub_constraint_cols: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    sub_premake: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    sub_inherit_fk: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sub_retention: Mapped[str | None] = mapped_column(String, nullable=True)
    sub_use_run_maintenance: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class CustomTimePartition(Base):
    """Half-open [range_start, range_end) owned by one child of a time-custom set."""

    __tablename__ = "custom_time_partitions"
    __table_args__ = (
        Index("ix_custom_time_partitions_parent_start", "parent_table", "range_start"),
    )

    parent_table: Mapped[str] = mapped_column(String, primary_key=True)
    child_table: Mapped[str] = mapped_column(String, primary_key=True)
    range_start: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    range_end: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
