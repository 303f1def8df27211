"""
PostgreSQL access for the partition engine.

Catalog introspection (pg_inherits, pg_tables, information_schema), DDL for
child tables and routing triggers, and the batch DML used to move rows.
Identifiers reaching this module have been validated by the naming module;
partition bounds are rendered as literals because DDL cannot take bind
parameters.
"""
from datetime import date, datetime, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from partsmith.modules.partitioning.domain import naming
from partsmith.shared.core.exceptions import LockNotAvailableError

logger = structlog.get_logger()

ALL_PRIVILEGES = frozenset(
    {"SELECT", "INSERT", "UPDATE", "DELETE", "TRUNCATE", "REFERENCES", "TRIGGER"}
)
_LOCK_NOT_AVAILABLE = "55P03"


def _as_bound(value: Any) -> Any:
    """Normalize control values read back from PostgreSQL to naive UTC / int."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return value


def _is_lock_not_available(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == _LOCK_NOT_AVAILABLE or "LockNotAvailable" in type(orig).__name__


def _range_predicate(column: str, lower: Any, upper: Any, upper_inclusive: bool = False) -> str:
    clauses = []
    if lower is not None:
        clauses.append(f"{column} >= {naming.quote_literal(lower)}")
    if upper is not None:
        operator = "<=" if upper_inclusive else "<"
        clauses.append(f"{column} {operator} {naming.quote_literal(upper)}")
    return " AND ".join(clauses) if clauses else "true"


class PostgresPartitionGateway:
    def __init__(self, db: AsyncSession):
        self.db = db

    # --- Introspection ---

    async def table_exists(self, table: str) -> bool:
        schema, name = naming.split_qualified(table)
        exists = await self.db.scalar(
            text("""
                SELECT EXISTS (
                    SELECT 1 FROM pg_tables
                    WHERE schemaname = :schema AND tablename = :name
                )
            """),
            {"schema": schema, "name": name},
        )
        return bool(exists)

    async def column_is_not_null(self, table: str, column: str) -> bool:
        schema, name = naming.split_qualified(table)
        not_null = await self.db.scalar(
            text("""
                SELECT a.attnotnull
                FROM pg_attribute a
                JOIN pg_class c ON a.attrelid = c.oid
                JOIN pg_namespace n ON c.relnamespace = n.oid
                WHERE n.nspname = :schema AND c.relname = :name
                  AND a.attname = :column AND NOT a.attisdropped
            """),
            {"schema": schema, "name": name, "column": column},
        )
        return bool(not_null)

    async def list_children(self, parent_table: str) -> list[str]:
        schema, name = naming.split_qualified(parent_table)
        result = await self.db.execute(
            text("""
                SELECT cn.nspname || '.' || cc.relname
                FROM pg_inherits i
                JOIN pg_class cc ON i.inhrelid = cc.oid
                JOIN pg_namespace cn ON cc.relnamespace = cn.oid
                JOIN pg_class pc ON i.inhparent = pc.oid
                JOIN pg_namespace pn ON pc.relnamespace = pn.oid
                WHERE pn.nspname = :schema AND pc.relname = :name
                ORDER BY i.inhrelid
            """),
            {"schema": schema, "name": name},
        )
        return [row[0] for row in result.all()]

    async def inheritance_index(self) -> list[tuple[str, str]]:
        """Every (parent, child) inheritance edge in the database."""
        result = await self.db.execute(
            text("""
                SELECT pn.nspname || '.' || pc.relname, cn.nspname || '.' || cc.relname
                FROM pg_inherits i
                JOIN pg_class pc ON i.inhparent = pc.oid
                JOIN pg_namespace pn ON pc.relnamespace = pn.oid
                JOIN pg_class cc ON i.inhrelid = cc.oid
                JOIN pg_namespace cn ON cc.relnamespace = cn.oid
            """)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def table_grants(self, table: str) -> dict[str, set[str]]:
        schema, name = naming.split_qualified(table)
        result = await self.db.execute(
            text("""
                SELECT grantee, privilege_type
                FROM information_schema.table_privileges
                WHERE table_schema = :schema AND table_name = :name
            """),
            {"schema": schema, "name": name},
        )
        grants: dict[str, set[str]] = {}
        for grantee, privilege in result.all():
            grants.setdefault(grantee, set()).add(privilege)
        return grants

    async def table_owner(self, table: str) -> Optional[str]:
        schema, name = naming.split_qualified(table)
        return await self.db.scalar(
            text("SELECT tableowner FROM pg_tables WHERE schemaname = :schema AND tablename = :name"),
            {"schema": schema, "name": name},
        )

    async def foreign_key_definitions(self, table: str) -> list[str]:
        schema, name = naming.split_qualified(table)
        result = await self.db.execute(
            text("""
                SELECT pg_get_constraintdef(con.oid)
                FROM pg_constraint con
                JOIN pg_class c ON con.conrelid = c.oid
                JOIN pg_namespace n ON c.relnamespace = n.oid
                WHERE con.contype = 'f' AND n.nspname = :schema AND c.relname = :name
            """),
            {"schema": schema, "name": name},
        )
        return [row[0] for row in result.all()]

    async def constraint_exists(self, table: str, constraint: str) -> bool:
        schema, name = naming.split_qualified(table)
        exists = await self.db.scalar(
            text("""
                SELECT EXISTS (
                    SELECT 1 FROM pg_constraint con
                    JOIN pg_class c ON con.conrelid = c.oid
                    JOIN pg_namespace n ON c.relnamespace = n.oid
                    WHERE n.nspname = :schema AND c.relname = :name AND con.conname = :constraint
                )
            """),
            {"schema": schema, "name": name, "constraint": constraint},
        )
        return bool(exists)

    async def control_bounds(self, table: str, column: str, *, only: bool = True) -> tuple[Any, Any]:
        scope = "ONLY " if only else ""
        result = await self.db.execute(
            text(f"SELECT min({column}), max({column}) FROM {scope}{table}")
        )
        low, high = result.one()
        return _as_bound(low), _as_bound(high)

    async def max_control(self, table: str, column: str) -> Any:
        """Max over the whole inheritance tree under `table`."""
        return _as_bound(await self.db.scalar(text(f"SELECT max({column}) FROM {table}")))

    async def count_rows(self, table: str, *, only: bool = True) -> int:
        scope = "ONLY " if only else ""
        return int(await self.db.scalar(text(f"SELECT count(*) FROM {scope}{table}")) or 0)

    async def relation_size(self, table: str) -> int:
        schema, name = naming.split_qualified(table)
        size = await self.db.scalar(
            text("""
                SELECT pg_total_relation_size(c.oid)
                FROM pg_class c JOIN pg_namespace n ON c.relnamespace = n.oid
                WHERE n.nspname = :schema AND c.relname = :name
            """),
            {"schema": schema, "name": name},
        )
        return int(size or 0)

    # --- Child table DDL ---

    async def create_child_table(self, parent_table: str, child_table: str) -> None:
        """Clone the parent's columns, defaults, constraints, indexes and storage."""
        schema, name = naming.split_qualified(parent_table)
        result = await self.db.execute(
            text("""
                SELECT c.relpersistence, t.spcname
                FROM pg_class c
                JOIN pg_namespace n ON c.relnamespace = n.oid
                LEFT JOIN pg_tablespace t ON c.reltablespace = t.oid
                WHERE n.nspname = :schema AND c.relname = :name
            """),
            {"schema": schema, "name": name},
        )
        persistence, tablespace = result.one_or_none() or (None, None)
        unlogged = "UNLOGGED " if persistence == "u" else ""
        await self.db.execute(
            text(
                f"CREATE {unlogged}TABLE IF NOT EXISTS {child_table} "
                f"(LIKE {parent_table} INCLUDING DEFAULTS INCLUDING CONSTRAINTS "
                f"INCLUDING INDEXES INCLUDING STORAGE INCLUDING COMMENTS)"
            )
        )
        if tablespace:
            await self.db.execute(text(f'ALTER TABLE {child_table} SET TABLESPACE "{tablespace}"'))

    async def add_range_constraint(
        self,
        table: str,
        constraint: str,
        column: str,
        lower: Any,
        upper: Any,
        *,
        upper_inclusive: bool = False,
    ) -> None:
        predicate = _range_predicate(column, lower, upper, upper_inclusive)
        await self.db.execute(
            text(f"ALTER TABLE {table} ADD CONSTRAINT {constraint} CHECK ({predicate})")
        )

    async def inherit(self, child_table: str, parent_table: str) -> None:
        await self.db.execute(text(f"ALTER TABLE {child_table} INHERIT {parent_table}"))

    async def no_inherit(self, child_table: str, parent_table: str) -> None:
        await self.db.execute(text(f"ALTER TABLE {child_table} NO INHERIT {parent_table}"))

    async def grant(self, table: str, grantee: str, privileges: set[str]) -> None:
        if privileges:
            await self.db.execute(
                text(f'GRANT {", ".join(sorted(privileges))} ON {table} TO "{grantee}"')
            )

    async def revoke(self, table: str, grantee: str, privileges: set[str]) -> None:
        if privileges:
            await self.db.execute(
                text(f'REVOKE {", ".join(sorted(privileges))} ON {table} FROM "{grantee}"')
            )

    async def set_owner(self, table: str, owner: str) -> None:
        await self.db.execute(text(f'ALTER TABLE {table} OWNER TO "{owner}"'))

    async def add_foreign_key(self, table: str, definition: str) -> None:
        await self.db.execute(text(f"ALTER TABLE {table} ADD {definition}"))

    async def drop_table(self, table: str) -> None:
        await self.db.execute(text(f"DROP TABLE IF EXISTS {table} CASCADE"))

    async def set_schema(self, table: str, schema: str) -> None:
        await self.db.execute(text(f"ALTER TABLE {table} SET SCHEMA {schema}"))

    async def drop_indexes(self, table: str) -> int:
        """Drop every index on `table`, going through the constraint when one owns the index."""
        schema, name = naming.split_qualified(table)
        result = await self.db.execute(
            text("""
                SELECT ic.relname, con.conname
                FROM pg_index i
                JOIN pg_class ic ON i.indexrelid = ic.oid
                JOIN pg_class c ON i.indrelid = c.oid
                JOIN pg_namespace n ON c.relnamespace = n.oid
                LEFT JOIN pg_constraint con
                  ON con.conindid = i.indexrelid AND con.conrelid = i.indrelid
                WHERE n.nspname = :schema AND c.relname = :name
            """),
            {"schema": schema, "name": name},
        )
        dropped = 0
        for index_name, constraint_name in result.all():
            if constraint_name:
                await self.db.execute(text(f"ALTER TABLE {table} DROP CONSTRAINT {constraint_name}"))
            else:
                await self.db.execute(text(f"DROP INDEX IF EXISTS {schema}.{index_name}"))
            dropped += 1
        return dropped

    async def analyze(self, table: str) -> None:
        await self.db.execute(text(f"ANALYZE {table}"))

    # --- Locks and batch movement ---

    async def lock_rows_nowait(
        self, table: str, column: str, lower: Any = None, upper: Any = None
    ) -> None:
        predicate = _range_predicate(column, lower, upper)
        await self._nowait(
            f"SELECT 1 FROM ONLY {table} WHERE {predicate} FOR UPDATE NOWAIT", table
        )

    async def lock_table_nowait(self, table: str) -> None:
        await self._nowait(f"LOCK TABLE ONLY {table} IN ACCESS EXCLUSIVE MODE NOWAIT", table)

    async def _nowait(self, statement: str, table: str) -> None:
        # A failed NOWAIT aborts the transaction; the savepoint keeps retries possible.
        try:
            async with self.db.begin_nested():
                await self.db.execute(text(statement))
        except DBAPIError as e:
            if _is_lock_not_available(e):
                raise LockNotAvailableError(
                    f"Could not lock {table} without waiting", details={"table": table}
                ) from e
            raise

    async def move_rows(
        self,
        source_table: str,
        target_table: str,
        column: str,
        lower: Any = None,
        upper: Any = None,
    ) -> int:
        """Delete matching rows from ONLY source and insert them into target in one statement."""
        predicate = _range_predicate(column, lower, upper)
        result = await self.db.execute(
            text(
                f"WITH moved AS (DELETE FROM ONLY {source_table} WHERE {predicate} RETURNING *) "
                f"INSERT INTO {target_table} SELECT * FROM moved"
            )
        )
        return int(result.rowcount or 0)

    # --- Routing DDL ---

    async def execute_routing_ddl(self, statement: str) -> None:
        await self.db.execute(text(statement))

    async def drop_trigger(self, trigger: str, table: str) -> None:
        await self.db.execute(text(f"DROP TRIGGER IF EXISTS {trigger} ON {table}"))

    async def drop_function(self, function: str) -> None:
        await self.db.execute(text(f"DROP FUNCTION IF EXISTS {function}()"))
