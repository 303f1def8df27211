"""
Migrating parent rows into children and undoing a partition set.
"""
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from partsmith.modules.partitioning.domain.results import LOCK_WAIT_EXHAUSTED_COUNT, OperationStatus
from partsmith.modules.partitioning.domain.types import MigrationOrder, PartitionMode, PartitionSetConfig
from partsmith.shared.core.exceptions import MultiLevelUndoBlockedError

TODAY = datetime(2024, 5, 15)


def day(offset: int) -> datetime:
    return TODAY + timedelta(days=offset)


def _rows_by_day() -> list[dict]:
    """150 rows, 50 on each of 2024-05-10, 2024-05-11 and 2024-05-12."""
    rows = []
    for offset in (-5, -4, -3):
        for step in range(50):
            rows.append({"id": len(rows) + 1, "created_at": day(offset) + timedelta(minutes=10 * step)})
    return rows


@pytest_asyncio.fixture
async def loaded_set(engine, gateway, events_table):
    await engine.create_parent("public.events", "created_at", "time-static", "daily", premake=2)
    rows = _rows_by_day()
    gateway.insert("public.events", rows)
    return rows


class TestMigrate:
    @pytest.mark.asyncio
    async def test_single_batch_moves_one_partition(self, engine, gateway, loaded_set):
        result = await engine.migrate("public.events", batch_count=1)

        assert result.status is OperationStatus.SUCCESS
        assert result.count == 50
        assert len(gateway.tables["public.events_p2024_05_10"].rows) == 50
        assert len(gateway.tables["public.events"].rows) == 100
        assert "public.events_p2024_05_11" not in gateway.tables

    @pytest.mark.asyncio
    async def test_batches_until_parent_is_empty(self, engine, gateway, loaded_set):
        result = await engine.migrate("public.events", batch_count=10)

        assert result.count == 150
        assert gateway.tables["public.events"].rows == []
        assert await engine.check_parents() == {}
        # New children were added to the static routing ladder
        assert "public.events" in gateway.analyzed

    @pytest.mark.asyncio
    async def test_descending_starts_with_newest_rows(self, engine, gateway, loaded_set):
        result = await engine.migrate("public.events", batch_count=1, order=MigrationOrder.DESCENDING)

        assert result.count == 50
        assert len(gateway.tables["public.events_p2024_05_12"].rows) == 50
        assert "public.events_p2024_05_10" not in gateway.tables

    @pytest.mark.asyncio
    async def test_batch_interval_narrows_each_batch(self, engine, gateway, loaded_set):
        result = await engine.migrate("public.events", batch_count=1, batch_interval="1 hour")

        # Rows at :00 through :50 of the first hour
        assert result.count == 6
        assert len(gateway.tables["public.events_p2024_05_10"].rows) == 6

    @pytest.mark.asyncio
    async def test_batch_interval_wider_than_partition_is_ignored(self, engine, loaded_set):
        result = await engine.migrate("public.events", batch_count=1, batch_interval="1 week")
        assert result.count == 50

    @pytest.mark.asyncio
    async def test_lock_wait_exhaustion_returns_sentinel(self, engine, gateway, loaded_set):
        gateway.locked.add("public.events")

        result = await engine.migrate("public.events", batch_count=3, lock_wait_seconds=0.01)

        assert result.status is OperationStatus.LOCK_TIMEOUT
        assert result.count == LOCK_WAIT_EXHAUSTED_COUNT
        assert len(gateway.tables["public.events"].rows) == 150

    @pytest.mark.asyncio
    async def test_id_set(self, engine, gateway):
        gateway.add_table("public.orders", columns=("id", "payload"), not_null=("id",))
        await engine.create_parent("public.orders", "id", "id-static", 10, premake=2)
        gateway.insert("public.orders", [{"id": value} for value in range(35, 45)])

        result = await engine.migrate("public.orders", batch_count=2)

        assert result.count == 10
        assert [row["id"] for row in gateway.tables["public.orders_p30"].rows] == [35, 36, 37, 38, 39]
        assert [row["id"] for row in gateway.tables["public.orders_p40"].rows] == [40, 41, 42, 43, 44]

    @pytest.mark.asyncio
    async def test_custom_set_leaves_uncovered_rows(self, engine, gateway, events_table):
        await engine.create_parent("public.events", "created_at", "time-custom", "45 minutes", premake=1)
        gateway.insert("public.events", [{"id": 1, "created_at": day(-3)}])

        result = await engine.migrate("public.events", batch_count=1)

        assert result.count == 0
        assert result.diagnostics[0].event == "no_partition_for_value"
        assert len(gateway.tables["public.events"].rows) == 1


class TestUndo:
    @pytest.mark.asyncio
    async def test_migrate_then_undo_restores_parent(self, engine, catalog, gateway, loaded_set):
        await engine.migrate("public.events", batch_count=10)

        result = await engine.undo("public.events", batch_count=10)

        assert result.count == 150
        restored = sorted(gateway.tables["public.events"].rows, key=lambda row: row["id"])
        assert restored == loaded_set
        assert gateway.children_of("public.events") == []
        assert "public.events" not in gateway.triggers
        assert await catalog.get("public.events") is None
        # keep_table leaves the former children in place
        assert "public.events_p2024_05_10" in gateway.tables

    @pytest.mark.asyncio
    async def test_batch_count_limits_children_with_rows(self, engine, catalog, gateway, loaded_set):
        await engine.migrate("public.events", batch_count=10)

        result = await engine.undo("public.events", batch_count=1)

        assert result.count == 50
        assert "public.events_p2024_05_10" not in gateway.children_of("public.events")
        assert "public.events_p2024_05_11" in gateway.children_of("public.events")
        config = await catalog.require("public.events")
        assert config.undo_in_progress is True

        maintenance = await engine.run_maintenance()
        assert maintenance.sets[0].status is OperationStatus.SKIPPED

        finished = await engine.undo("public.events", batch_count=10)
        assert finished.count == 100
        assert await catalog.get("public.events") is None

    @pytest.mark.asyncio
    async def test_dropping_children(self, engine, gateway, loaded_set):
        await engine.migrate("public.events", batch_count=10)

        await engine.undo("public.events", batch_count=10, keep_table=False)

        assert not [table for table in gateway.tables if table.startswith("public.events_p")]
        assert len(gateway.tables["public.events"].rows) == 150

    @pytest.mark.asyncio
    async def test_lock_wait_exhaustion(self, engine, gateway, loaded_set):
        gateway.locked.add("public.events")

        result = await engine.undo("public.events", lock_wait_seconds=0.01)

        assert result.status is OperationStatus.LOCK_TIMEOUT
        assert result.count == -1
        assert len(gateway.children_of("public.events")) == 5

    @pytest.mark.asyncio
    async def test_locked_empty_child_is_not_detached(self, engine, catalog, gateway, loaded_set):
        # Rows still sit in the parent, so the oldest child is empty
        gateway.locked.add("public.events_p2024_05_13")

        result = await engine.undo("public.events", batch_count=10, lock_wait_seconds=0.01)

        assert result.status is OperationStatus.LOCK_TIMEOUT
        assert "public.events_p2024_05_13" in gateway.children_of("public.events")
        assert len(gateway.children_of("public.events")) == 5
        assert (await catalog.require("public.events")).undo_in_progress is True

    @pytest.mark.asyncio
    async def test_multi_level_set_must_be_undone_bottom_up(self, engine, catalog, gateway, loaded_set):
        await catalog.create(
            PartitionSetConfig(
                parent_table="public.events_p2024_05_15",
                mode=PartitionMode.TIME_DYNAMIC,
                control="created_at",
                interval="hourly",
            )
        )

        with pytest.raises(MultiLevelUndoBlockedError):
            await engine.undo("public.events")
        assert len(gateway.children_of("public.events")) == 5
