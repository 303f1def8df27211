"""
Fixtures for partition engine tests.

FakePartitionGateway keeps tables, inheritance edges, rows, grants and
locks in memory and answers the same calls PostgresPartitionGateway
answers against pg_catalog. The engine under test pairs it with the real
PartitionCatalog on SQLite and a frozen clock.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy.exc import ProgrammingError

from partsmith.modules.partitioning.domain.catalog import PartitionCatalog
from partsmith.modules.partitioning.domain.engine import PartitionEngine
from partsmith.shared.core.exceptions import LockNotAvailableError
from partsmith.shared.core.locks import InProcessLockProvider

NOW = datetime(2024, 5, 15, 10, 30)
NOTIFY_CHANNEL = "partsmith_premake"


@dataclass
class FakeTable:
    columns: tuple[str, ...]
    not_null: set[str]
    owner: str = "app_owner"
    grants: dict[str, set[str]] = field(default_factory=dict)
    rows: list[dict[str, Any]] = field(default_factory=list)
    constraints: dict[str, tuple] = field(default_factory=dict)
    indexes: set[str] = field(default_factory=set)
    foreign_keys: list[str] = field(default_factory=list)


class FakePartitionGateway:
    def __init__(self) -> None:
        self.tables: dict[str, FakeTable] = {}
        # child -> parent
        self.parents: dict[str, str] = {}
        self.locked: set[str] = set()
        self.failing_tables: set[str] = set()
        self.routing_ddl: list[str] = []
        self.triggers: dict[str, str] = {}
        self.analyzed: list[str] = []

    # --- Test helpers ---

    def add_table(
        self,
        table: str,
        columns: tuple[str, ...] = ("id", "created_at", "payload"),
        not_null: tuple[str, ...] = ("id", "created_at"),
        owner: str = "app_owner",
        grants: Optional[dict[str, set[str]]] = None,
        indexes: tuple[str, ...] = (),
        foreign_keys: tuple[str, ...] = (),
    ) -> FakeTable:
        self.tables[table] = FakeTable(
            columns=columns,
            not_null=set(not_null),
            owner=owner,
            grants={grantee: set(privileges) for grantee, privileges in (grants or {}).items()},
            indexes=set(indexes),
            foreign_keys=list(foreign_keys),
        )
        return self.tables[table]

    def insert(self, table: str, rows: list[dict[str, Any]]) -> None:
        self.tables[table].rows.extend(dict(row) for row in rows)

    def children_of(self, table: str) -> list[str]:
        return [child for child, parent in self.parents.items() if parent == table]

    def tree(self, table: str) -> list[str]:
        found = [table]
        for child in self.children_of(table):
            found.extend(self.tree(child))
        return found

    def tree_rows(self, table: str) -> list[dict[str, Any]]:
        return [row for member in self.tree(table) for row in self.tables[member].rows]

    # --- Introspection ---

    async def table_exists(self, table: str) -> bool:
        return table in self.tables

    async def column_is_not_null(self, table: str, column: str) -> bool:
        return table in self.tables and column in self.tables[table].not_null

    async def list_children(self, parent_table: str) -> list[str]:
        return self.children_of(parent_table)

    async def inheritance_index(self) -> list[tuple[str, str]]:
        return [(parent, child) for child, parent in self.parents.items()]

    async def table_grants(self, table: str) -> dict[str, set[str]]:
        return {grantee: set(privileges) for grantee, privileges in self.tables[table].grants.items()}

    async def table_owner(self, table: str) -> Optional[str]:
        return self.tables[table].owner if table in self.tables else None

    async def foreign_key_definitions(self, table: str) -> list[str]:
        return list(self.tables[table].foreign_keys)

    async def constraint_exists(self, table: str, constraint: str) -> bool:
        return constraint in self.tables[table].constraints

    async def control_bounds(self, table: str, column: str, *, only: bool = True) -> tuple[Any, Any]:
        rows = self.tables[table].rows if only else self.tree_rows(table)
        values = [row[column] for row in rows if row.get(column) is not None]
        if not values:
            return None, None
        return min(values), max(values)

    async def max_control(self, table: str, column: str) -> Any:
        values = [row[column] for row in self.tree_rows(table) if row.get(column) is not None]
        return max(values) if values else None

    async def count_rows(self, table: str, *, only: bool = True) -> int:
        return len(self.tables[table].rows if only else self.tree_rows(table))

    async def relation_size(self, table: str) -> int:
        return 8192 + 100 * len(self.tables[table].rows)

    # --- Child table DDL ---

    async def create_child_table(self, parent_table: str, child_table: str) -> None:
        if parent_table in self.failing_tables:
            raise ProgrammingError("CREATE TABLE", {}, Exception(f"cannot create under {parent_table}"))
        if child_table in self.tables:
            return
        parent = self.tables[parent_table]
        self.tables[child_table] = FakeTable(
            columns=parent.columns,
            not_null=set(parent.not_null),
            owner="partsmith",
            indexes={f"{child_table}_{index}" for index in parent.indexes},
        )

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
        self.tables[table].constraints[constraint] = (column, lower, upper, upper_inclusive)

    async def inherit(self, child_table: str, parent_table: str) -> None:
        self.parents[child_table] = parent_table

    async def no_inherit(self, child_table: str, parent_table: str) -> None:
        if self.parents.get(child_table) == parent_table:
            del self.parents[child_table]

    async def grant(self, table: str, grantee: str, privileges: set[str]) -> None:
        if privileges:
            self.tables[table].grants.setdefault(grantee, set()).update(privileges)

    async def revoke(self, table: str, grantee: str, privileges: set[str]) -> None:
        remaining = self.tables[table].grants.get(grantee, set()) - privileges
        if remaining:
            self.tables[table].grants[grantee] = remaining
        else:
            self.tables[table].grants.pop(grantee, None)

    async def set_owner(self, table: str, owner: str) -> None:
        self.tables[table].owner = owner

    async def add_foreign_key(self, table: str, definition: str) -> None:
        self.tables[table].foreign_keys.append(definition)

    async def drop_table(self, table: str) -> None:
        if table not in self.tables:
            return
        for member in self.tree(table):
            self.tables.pop(member, None)
            self.parents.pop(member, None)

    async def set_schema(self, table: str, schema: str) -> None:
        moved = f"{schema}.{table.split('.', 1)[1]}"
        self.tables[moved] = self.tables.pop(table)
        for child, parent in list(self.parents.items()):
            if parent == table:
                self.parents[child] = moved

    async def drop_indexes(self, table: str) -> int:
        dropped = len(self.tables[table].indexes)
        self.tables[table].indexes.clear()
        return dropped

    async def analyze(self, table: str) -> None:
        self.analyzed.append(table)

    # --- Locks and batch movement ---

    async def lock_rows_nowait(self, table: str, column: str, lower: Any = None, upper: Any = None) -> None:
        if table in self.locked:
            raise LockNotAvailableError(f"Could not lock {table} without waiting", details={"table": table})

    async def lock_table_nowait(self, table: str) -> None:
        if table in self.locked:
            raise LockNotAvailableError(f"Could not lock {table} without waiting", details={"table": table})

    async def move_rows(
        self,
        source_table: str,
        target_table: str,
        column: str,
        lower: Any = None,
        upper: Any = None,
    ) -> int:
        def matches(row: dict[str, Any]) -> bool:
            value = row[column]
            return (lower is None or value >= lower) and (upper is None or value < upper)

        source = self.tables[source_table]
        moving = [row for row in source.rows if matches(row)]
        source.rows = [row for row in source.rows if not matches(row)]
        self.tables[target_table].rows.extend(moving)
        return len(moving)

    # --- Routing DDL ---

    async def execute_routing_ddl(self, statement: str) -> None:
        self.routing_ddl.append(statement)
        if statement.startswith("CREATE TRIGGER"):
            parts = statement.split()
            self.triggers[parts[6]] = parts[2]

    async def drop_trigger(self, trigger: str, table: str) -> None:
        if self.triggers.get(table) == trigger:
            del self.triggers[table]

    async def drop_function(self, function: str) -> None:
        self.routing_ddl.append(f"DROP FUNCTION {function}")


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def gateway():
    return FakePartitionGateway()


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest_asyncio.fixture
async def catalog(db_session):
    return PartitionCatalog(db_session)


@pytest_asyncio.fixture
async def engine(catalog, gateway, clock):
    return PartitionEngine(
        catalog,
        gateway,
        InProcessLockProvider(),
        clock=clock,
        notify_channel=NOTIFY_CHANNEL,
    )


@pytest.fixture
def events_table(gateway):
    """public.events with an owner, one grantee and a foreign key."""
    return gateway.add_table(
        "public.events",
        owner="app_owner",
        grants={"reporting": {"SELECT"}, "app_owner": {"SELECT", "INSERT"}},
        indexes=("created_at_idx",),
        foreign_keys=("FOREIGN KEY (account_id) REFERENCES public.accounts(id)",),
    )
