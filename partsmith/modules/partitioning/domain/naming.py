"""
Deterministic object names for partition sets.

PostgreSQL truncates identifiers at 63 bytes; names are shortened here so
that the stable suffix (partition key, "_part_trig", ...) always survives.
"""
import re
from datetime import date, datetime
from typing import Optional

from partsmith.shared.core.exceptions import InvalidIdentifierError

MAX_IDENTIFIER_LENGTH = 63
# Partition names reserve two characters for the "_p" separator
PARTITION_NAME_LIMIT = MAX_IDENTIFIER_LENGTH - 2
PARTITION_SEPARATOR = "_p"

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_$]*$")


def validate_identifier(name: str) -> str:
    if not name or not _IDENTIFIER.match(name) or len(name) > MAX_IDENTIFIER_LENGTH:
        raise InvalidIdentifierError(
            f"'{name}' is not a plain lower-case SQL identifier", details={"identifier": name}
        )
    return name


def split_qualified(table: str) -> tuple[str, str]:
    """'schema.table' -> ('schema', 'table'); unqualified names are rejected."""
    schema, dot, name = str(table or "").partition(".")
    if not dot:
        raise InvalidIdentifierError(
            f"Table '{table}' must be schema-qualified", details={"table": table}
        )
    return validate_identifier(schema), validate_identifier(name)


def object_name(name: str, suffix: str = "") -> str:
    if len(name) + len(suffix) >= MAX_IDENTIFIER_LENGTH:
        name = name[: MAX_IDENTIFIER_LENGTH - len(suffix)]
    return name + suffix


def partition_name(parent_table: str, suffix: str) -> str:
    schema, table = split_qualified(parent_table)
    if len(table) + len(suffix) >= PARTITION_NAME_LIMIT:
        table = table[: PARTITION_NAME_LIMIT - len(suffix)]
    return f"{schema}.{table}{PARTITION_SEPARATOR}{suffix}"


def partition_suffix(child_table: str) -> Optional[str]:
    """Text after the last '_p' separator, or None if the name carries none."""
    position = child_table.rfind(PARTITION_SEPARATOR)
    if position == -1:
        return None
    return child_table[position + len(PARTITION_SEPARATOR):]


def trigger_name(parent_table: str) -> str:
    _, table = split_qualified(parent_table)
    return object_name(table, "_part_trig")


def function_name(parent_table: str) -> str:
    schema, table = split_qualified(parent_table)
    return f"{schema}.{object_name(table, '_part_trig_func')}"


def check_constraint_name(child_table: str) -> str:
    _, table = split_qualified(child_table)
    return object_name(table, "_partition_check")


def column_constraint_name(child_table: str, column: str) -> str:
    _, table = split_qualified(child_table)
    return object_name(f"partconstr_{table}", f"_{column}")


def quote_literal(value: object) -> str:
    """Render a partition bound as an SQL literal."""
    if isinstance(value, bool):
        raise TypeError("boolean partition bounds are not supported")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, datetime):
        return "'" + value.isoformat(sep=" ") + "'"
    if isinstance(value, date):
        return "'" + value.isoformat() + "'"
    return "'" + str(value).replace("'", "''") + "'"
