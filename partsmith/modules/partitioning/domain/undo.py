"""
Undo Engine.

Reverses partitioning by moving every child's rows back into the parent,
oldest child first, and detaching (optionally dropping) each child. The
set's configuration is removed once no children remain.
"""
import structlog

from partsmith.modules.partitioning.domain.results import OperationResult
from partsmith.modules.partitioning.domain.types import PartitionMode
from partsmith.shared.core.exceptions import MultiLevelUndoBlockedError
from partsmith.shared.core.locks import UNDO_LOCK
from partsmith.shared.core.ops_metrics import ROWS_MIGRATED
from partsmith.shared.core.retry import acquire_with_lock_wait

logger = structlog.get_logger()


class UndoEngine:
    def __init__(self, catalog, gateway, calculator, router, locks):
        self.catalog = catalog
        self.gateway = gateway
        self.calculator = calculator
        self.router = router
        self.locks = locks

    async def undo(
        self,
        parent_table: str,
        batch_count: int = 1,
        keep_table: bool = True,
        lock_wait_seconds: float = 0,
    ) -> OperationResult:
        config = await self.catalog.require(parent_table)
        result = OperationResult("undo_partition", parent_table)

        async with self.locks.try_acquire(UNDO_LOCK) as acquired:
            if not acquired:
                return result.skip("undo_lock_held")

            children = await self.gateway.list_children(parent_table)
            for child in children:
                if await self.catalog.get(child) is not None:
                    raise MultiLevelUndoBlockedError(
                        f"{child} is itself a partition set; undo it before {parent_table}",
                        details={"parent_table": parent_table, "child": child},
                    )

            if not config.undo_in_progress:
                await self.catalog.set_undo_in_progress(parent_table, True)

            if lock_wait_seconds > 0:
                locked = await acquire_with_lock_wait(
                    lambda: self.gateway.lock_table_nowait(parent_table),
                    lock_wait_seconds,
                    operation="undo_partition",
                )
                if not locked:
                    return result.abort_on_lock_wait(table=parent_table)
            await self.router.remove(config)

            ordered = [child for _, child in self.calculator.order_children(config, children)]
            ordered += [child for child in children if child not in ordered]

            batches = 0
            for child in ordered:
                if batches >= batch_count:
                    break
                # Empty children are detached under the same lock as loaded ones
                if lock_wait_seconds > 0:
                    locked = await acquire_with_lock_wait(
                        lambda: self.gateway.lock_table_nowait(child),
                        lock_wait_seconds,
                        operation="undo_partition",
                    )
                    if not locked:
                        return result.abort_on_lock_wait(table=child)
                if await self.gateway.count_rows(child):
                    moved = await self.gateway.move_rows(child, parent_table, config.control)
                    ROWS_MIGRATED.labels(direction="into_parent").inc(moved)
                    result.count += moved
                    batches += 1

                await self.gateway.no_inherit(child, parent_table)
                if not keep_table:
                    await self.gateway.drop_table(child)
                if config.mode is PartitionMode.TIME_CUSTOM:
                    await self.catalog.delete_custom_range(parent_table, child)
                logger.info(
                    "partition_undone",
                    parent_table=parent_table,
                    partition=child,
                    dropped=not keep_table,
                )

            if not await self.gateway.list_children(parent_table):
                await self.catalog.delete([parent_table])
                result.note("partition_set_undone", rows_moved=result.count)
        return result
