"""
Partition set declarations.

Partition sets can be declared in a YAML file and created from it by the
CLI. The file is either a list of entries or a mapping with a
`partition_sets` list:

    partition_sets:
      - table: public.events
        column: created_at
        type: time-dynamic
        interval: daily
        premake: 4
        retention: 30 days
        options:
          retention_keep_table: false
          constraint_cols: [account_id]
          subpartition:
            type: time-static
            column: created_at
            interval: hourly
"""
from pathlib import Path
from typing import Any, Optional, Union

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from partsmith.modules.partitioning.domain.types import (
    PartitionMode,
    PartitionSetConfig,
    RetentionMode,
    SubPartitionTemplate,
)
from partsmith.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()


class SubPartitionDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: PartitionMode
    column: str
    interval: Union[str, int]
    premake: int = Field(default=4, gt=0)
    retention: Optional[Union[str, int]] = None
    constraint_cols: list[str] = Field(default_factory=list)
    inherit_fk: bool = True
    use_scheduled_maintenance: bool = True

    def to_template(self, parent_table: str) -> SubPartitionTemplate:
        return SubPartitionTemplate(
            parent_table=parent_table,
            mode=self.type,
            control=self.column,
            interval=str(self.interval),
            premake=self.premake,
            constraint_cols=tuple(self.constraint_cols),
            retention=str(self.retention) if self.retention is not None else None,
            inherit_fk=self.inherit_fk,
            use_scheduled_maintenance=self.use_scheduled_maintenance,
        )


class PartitionOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    retention_schema: Optional[str] = None
    retention_keep_table: bool = True
    retention_keep_index: bool = True
    batch_count: int = Field(default=1, gt=0)
    lock_wait: float = Field(default=0, ge=0)
    drop_table_on_undo: bool = False
    constraint_cols: list[str] = Field(default_factory=list)
    inherit_fk: bool = True
    use_scheduled_maintenance: bool = True
    subpartition: Optional[SubPartitionDefinition] = None

    @property
    def retention_mode(self) -> RetentionMode:
        return RetentionMode.from_flags(
            keep_table=self.retention_keep_table,
            keep_index=self.retention_keep_index,
            retention_schema=self.retention_schema,
        )


class PartitionSetDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    table: str
    column: str
    type: PartitionMode
    interval: Union[str, int]
    premake: int = Field(default=4, gt=0)
    retention: Optional[Union[str, int]] = None
    options: PartitionOptions = Field(default_factory=PartitionOptions)

    @field_validator("table")
    @classmethod
    def table_must_be_qualified(cls, value: str) -> str:
        if "." not in value:
            raise ValueError("table must be schema-qualified (schema.table)")
        return value

    def to_config(self) -> PartitionSetConfig:
        return PartitionSetConfig(
            parent_table=self.table,
            mode=self.type,
            control=self.column,
            interval=str(self.interval),
            premake=self.premake,
            constraint_cols=tuple(self.options.constraint_cols),
            retention=str(self.retention) if self.retention is not None else None,
            retention_mode=self.options.retention_mode,
            retention_schema=self.options.retention_schema,
            inherit_fk=self.options.inherit_fk,
            use_scheduled_maintenance=self.options.use_scheduled_maintenance,
        )

    def sub_template(self) -> Optional[SubPartitionTemplate]:
        if self.options.subpartition is None:
            return None
        return self.options.subpartition.to_template(self.table)


def parse_partition_sets(raw: Any) -> list[PartitionSetDefinition]:
    if isinstance(raw, dict):
        raw = raw.get("partition_sets", [])
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigurationError("Partition file must hold a list of partition sets")
    try:
        definitions = [PartitionSetDefinition.model_validate(entry) for entry in raw]
    except ValidationError as e:
        raise ConfigurationError(
            "Invalid partition set definition", details={"errors": e.errors(include_url=False)}
        ) from e
    tables = [definition.table for definition in definitions]
    duplicates = sorted({table for table in tables if tables.count(table) > 1})
    if duplicates:
        raise ConfigurationError(
            "Partition sets declared more than once", details={"tables": duplicates}
        )
    return definitions


def load_partition_file(path: Union[str, Path]) -> list[PartitionSetDefinition]:
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(
            f"Partition file {path} does not exist", details={"path": str(path)}
        ) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Partition file {path} is not valid YAML", details={"error": str(e)}
        ) from e
    definitions = parse_partition_sets(raw)
    logger.info("partition_file_loaded", path=str(path), partition_sets=len(definitions))
    return definitions


def find_definition(definitions: list[PartitionSetDefinition], table: str) -> PartitionSetDefinition:
    for definition in definitions:
        if definition.table == table:
            return definition
    raise ConfigurationError(
        f"No partition set named {table} in the partition file", details={"table": table}
    )
