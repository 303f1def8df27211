"""
Inheritance walks over the parent -> children graph.

The index is rebuilt from the database on every call and walked
iteratively; a walk that revisits a table or passes the depth cap raises
InheritanceCycleError instead of looping.
"""
from collections import deque
from typing import Optional

import structlog

from partsmith.shared.core.exceptions import InheritanceCycleError

logger = structlog.get_logger()


class Lineage:
    def __init__(self, gateway, catalog, max_depth: int = 16):
        self.gateway = gateway
        self.catalog = catalog
        self.max_depth = max_depth

    async def _index(self) -> tuple[dict[str, list[str]], dict[str, str]]:
        children: dict[str, list[str]] = {}
        parents: dict[str, str] = {}
        for parent, child in await self.gateway.inheritance_index():
            children.setdefault(parent, []).append(child)
            parents[child] = parent
        return children, parents

    def _cycle(self, table: str, depth: int) -> InheritanceCycleError:
        logger.error("inheritance_walk_aborted", table=table, depth=depth, max_depth=self.max_depth)
        return InheritanceCycleError(
            f"Inheritance walk from {table} exceeded {self.max_depth} levels or revisited a table",
            details={"table": table, "max_depth": self.max_depth},
        )

    async def ancestors(self, table: str) -> list[str]:
        """Parents of `table`, nearest first."""
        _, parents = await self._index()
        found: list[str] = []
        seen = {table}
        current = table
        while current in parents:
            current = parents[current]
            if current in seen or len(found) >= self.max_depth:
                raise self._cycle(table, len(found))
            seen.add(current)
            found.append(current)
        return found

    async def descendants(self, table: str) -> list[str]:
        """Every table below `table`, breadth-first."""
        children, _ = await self._index()
        found: list[str] = []
        seen = {table}
        queue = deque([(table, 0)])
        while queue:
            current, depth = queue.popleft()
            for child in children.get(current, []):
                if child in seen or depth + 1 > self.max_depth:
                    raise self._cycle(table, depth + 1)
                seen.add(child)
                found.append(child)
                queue.append((child, depth + 1))
        return found

    async def managed_parent(self, table: str) -> Optional[str]:
        """Immediate parent of `table` if that parent is a configured partition set."""
        ancestors = await self.ancestors(table)
        if ancestors and await self.catalog.get(ancestors[0]) is not None:
            return ancestors[0]
        return None

    async def top_managed_ancestor(self, table: str, *, same_mode_family: bool = True) -> str:
        """
        Highest configured ancestor reachable through configured tables.

        With `same_mode_family`, the walk stops at the first ancestor whose
        mode is of a different family (time vs id), since its bounds are not
        comparable with the child's control values.
        """
        config = await self.catalog.get(table)
        top = table
        for ancestor in await self.ancestors(table):
            ancestor_config = await self.catalog.get(ancestor)
            if ancestor_config is None:
                break
            if (
                same_mode_family
                and config is not None
                and (ancestor_config.mode.is_id != config.mode.is_id
                     or ancestor_config.control != config.control)
            ):
                break
            top = ancestor
        return top

    async def siblings(self, table: str) -> list[str]:
        """Other children of `table`'s immediate parent."""
        children, parents = await self._index()
        parent = parents.get(table)
        if parent is None:
            return []
        return [child for child in children.get(parent, []) if child != table]
