from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from partsmith.modules.partitioning.domain import naming
from partsmith.modules.partitioning.domain.intervals import (
    TimeInterval,
    parse_id_interval,
    suffix_pattern,
)
from partsmith.shared.core.exceptions import (
    InvalidIntervalError,
    InvalidPartitionConfigError,
    InvalidPartitionTypeError,
)

Bound = Union[datetime, int]


class PartitionMode(str, Enum):
    TIME_STATIC = "time-static"
    TIME_DYNAMIC = "time-dynamic"
    TIME_CUSTOM = "time-custom"
    ID_STATIC = "id-static"
    ID_DYNAMIC = "id-dynamic"

    @classmethod
    def parse(cls, value: "str | PartitionMode") -> "PartitionMode":
        try:
            return cls(value)
        except ValueError as e:
            raise InvalidPartitionTypeError(
                f"Invalid partition type '{value}'",
                details={"allowed": [mode.value for mode in cls]},
            ) from e

    @property
    def is_time(self) -> bool:
        return self in {PartitionMode.TIME_STATIC, PartitionMode.TIME_DYNAMIC, PartitionMode.TIME_CUSTOM}

    @property
    def is_id(self) -> bool:
        return not self.is_time

    @property
    def is_static(self) -> bool:
        return self in {PartitionMode.TIME_STATIC, PartitionMode.ID_STATIC}


class RetentionMode(str, Enum):
    DROP = "drop"
    ARCHIVE = "archive"
    DROP_INDEXES = "drop_indexes"
    DETACH = "detach"

    @classmethod
    def from_flags(
        cls,
        *,
        keep_table: bool = True,
        keep_index: bool = True,
        retention_schema: Optional[str] = None,
    ) -> "RetentionMode":
        """Map keep-table / keep-index / archive-schema switches onto one mode."""
        if retention_schema:
            return cls.ARCHIVE
        if not keep_table:
            return cls.DROP
        if not keep_index:
            return cls.DROP_INDEXES
        return cls.DETACH


class MigrationOrder(str, Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"


@dataclass(frozen=True)
class PartitionSetConfig:
    parent_table: str
    mode: PartitionMode
    control: str
    interval: str
    premake: int = 4
    constraint_cols: tuple[str, ...] = ()
    retention: Optional[str] = None
    retention_mode: RetentionMode = RetentionMode.DETACH
    retention_schema: Optional[str] = None
    inherit_fk: bool = True
    use_scheduled_maintenance: bool = True
    undo_in_progress: bool = False
    datetime_string: Optional[str] = None

    @property
    def time_interval(self) -> TimeInterval:
        return TimeInterval.parse(self.interval)

    @property
    def id_interval(self) -> int:
        return parse_id_interval(self.interval)

    @property
    def retention_interval(self) -> Optional[TimeInterval]:
        return TimeInterval.parse(self.retention) if self.retention else None

    @property
    def retention_id(self) -> Optional[int]:
        return int(self.retention) if self.retention else None

    def validated(self) -> "PartitionSetConfig":
        """
        Check the configuration and return it with derived fields filled in.

        Invalid modes, intervals and premake values are rejected here so they
        never reach the runtime components.
        """
        mode = PartitionMode.parse(self.mode)
        naming.split_qualified(self.parent_table)
        naming.validate_identifier(self.control)
        for column in self.constraint_cols:
            naming.validate_identifier(column)
        if self.premake < 1:
            raise InvalidPartitionConfigError(
                "premake must be greater than 0", details={"premake": self.premake}
            )

        datetime_string = None
        if mode.is_time:
            interval = TimeInterval.parse(self.interval)
            if mode is PartitionMode.TIME_CUSTOM:
                if interval.approx_seconds < 1:
                    raise InvalidIntervalError("time-custom interval must be at least 1 second")
            elif not interval.is_named:
                raise InvalidIntervalError(
                    f"'{self.interval}' is not a named interval; use time-custom for arbitrary intervals",
                    details={"interval": self.interval},
                )
            canonical = str(interval)
            datetime_string = suffix_pattern(interval)
            if self.retention:
                TimeInterval.parse(self.retention)
        else:
            canonical = str(parse_id_interval(self.interval))
            if self.retention:
                try:
                    if int(self.retention) < 0:
                        raise ValueError(self.retention)
                except ValueError as e:
                    raise InvalidIntervalError(
                        "Id retention must be a non-negative integer",
                        details={"retention": self.retention},
                    ) from e

        if not self.use_scheduled_maintenance and not mode.is_static:
            raise InvalidPartitionConfigError(
                "Scheduled maintenance can only be disabled for static partition sets",
                details={"mode": mode.value},
            )

        retention_mode = RetentionMode(self.retention_mode)
        if retention_mode is RetentionMode.ARCHIVE:
            if not self.retention_schema:
                raise InvalidPartitionConfigError("Archive retention requires a retention_schema")
            naming.validate_identifier(self.retention_schema)

        return replace(
            self,
            mode=mode,
            interval=canonical,
            retention_mode=retention_mode,
            datetime_string=datetime_string,
        )


@dataclass(frozen=True)
class SubPartitionTemplate:
    """Configuration stamped onto every child created under `parent_table`."""

    parent_table: str
    mode: PartitionMode
    control: str
    interval: str
    premake: int = 4
    constraint_cols: tuple[str, ...] = ()
    retention: Optional[str] = None
    inherit_fk: bool = True
    use_scheduled_maintenance: bool = True

    def to_config(
        self,
        child_table: str,
        *,
        retention_mode: RetentionMode = RetentionMode.DETACH,
        retention_schema: Optional[str] = None,
    ) -> PartitionSetConfig:
        return PartitionSetConfig(
            parent_table=child_table,
            mode=self.mode,
            control=self.control,
            interval=self.interval,
            premake=self.premake,
            constraint_cols=self.constraint_cols,
            retention=self.retention,
            retention_mode=retention_mode,
            retention_schema=retention_schema,
            inherit_fk=self.inherit_fk,
            use_scheduled_maintenance=self.use_scheduled_maintenance,
        )

    def shape(self) -> tuple:
        """Everything except the owning parent; sibling templates must match on this."""
        return (
            PartitionMode(self.mode),
            self.control,
            self.interval,
            self.premake,
            tuple(self.constraint_cols),
            self.retention,
            self.inherit_fk,
            self.use_scheduled_maintenance,
        )


@dataclass(frozen=True)
class CustomIntervalRange:
    parent_table: str
    child_table: str
    start: datetime
    end: datetime

    def contains(self, value: datetime) -> bool:
        return self.start <= value < self.end


@dataclass(frozen=True)
class ChildTableDescriptor:
    table: str
    lower: Optional[Bound]
    upper: Optional[Bound]
    rows: int = 0
    bytes_on_disk: int = 0

    @property
    def order_key(self) -> tuple:
        # Children whose bounds cannot be read sort after every bounded child
        return (self.lower is None, self.lower if self.lower is not None else 0)


@dataclass
class PartitionSetInfo:
    config: PartitionSetConfig
    sub_template: Optional[SubPartitionTemplate] = None
    children: int = 0
    total_rows: int = 0
    total_bytes: int = 0
    parent_rows: int = 0
    newest_child: Optional[str] = None
    oldest_child: Optional[str] = None
