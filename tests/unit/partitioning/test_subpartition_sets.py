"""
Multi-level partition sets: daily children of public.events, each
sub-partitioned hourly.
"""
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from partsmith.modules.partitioning.domain.types import (
    PartitionMode,
    RetentionMode,
    SubPartitionTemplate,
)

TODAY = datetime(2024, 5, 15)
DAY_14 = "public.events_p2024_05_14"
DAY_15 = "public.events_p2024_05_15"
DAY_16 = "public.events_p2024_05_16"


def hourly(parent: str = "public.events", **overrides) -> SubPartitionTemplate:
    fields = dict(
        parent_table=parent,
        mode=PartitionMode.TIME_DYNAMIC,
        control="created_at",
        interval="hourly",
        premake=1,
    )
    fields.update(overrides)
    return SubPartitionTemplate(**fields)


def hour_child(parent: str, ts: datetime) -> str:
    return f"{parent}_p{ts.strftime('%Y_%m_%d_%H%M')}"


@pytest_asyncio.fixture
async def two_level(engine, events_table):
    await engine.create_parent("public.events", "created_at", "time-static", "daily", premake=1)
    return await engine.create_sub_parent(hourly())


@pytest.mark.asyncio
async def test_every_existing_child_becomes_a_set(catalog, gateway, two_level):
    assert two_level.count == 3
    for child in (DAY_14, DAY_15, DAY_16):
        config = await catalog.require(child)
        assert config.mode is PartitionMode.TIME_DYNAMIC
        assert config.interval == "hourly"


@pytest.mark.asyncio
async def test_sub_windows_are_clamped_to_parent_range(gateway, two_level):
    # Only 2024-05-15 contains now (10:30); the other days get their first hour
    assert sorted(gateway.children_of(DAY_15)) == [
        hour_child(DAY_15, TODAY + timedelta(hours=hour)) for hour in (9, 10, 11)
    ]
    assert gateway.children_of(DAY_14) == [hour_child(DAY_14, TODAY - timedelta(days=1))]
    assert gateway.children_of(DAY_16) == [hour_child(DAY_16, TODAY + timedelta(days=1))]


@pytest.mark.asyncio
async def test_grandchildren_take_foreign_keys_from_top_parent(gateway, two_level):
    grandchild = gateway.tables[hour_child(DAY_15, TODAY + timedelta(hours=10))]
    assert grandchild.foreign_keys == ["FOREIGN KEY (account_id) REFERENCES public.accounts(id)"]
    assert grandchild.grants == {"reporting": {"SELECT"}, "app_owner": {"SELECT", "INSERT"}}


@pytest.mark.asyncio
async def test_maintenance_sub_partitions_new_children(engine, catalog, gateway, clock, two_level):
    clock.advance(days=1)

    result = await engine.run_maintenance()

    day_17 = "public.events_p2024_05_17"
    assert await catalog.get(day_17) is not None
    assert gateway.children_of(day_17) == [hour_child(day_17, TODAY + timedelta(days=2))]

    by_table = {s.parent_table: s for s in result.sets}
    # The past day is filled up to its upper bound and then reported full
    assert len(gateway.children_of(DAY_14)) == 24
    assert "sub_partition_set_full" in [d.event for d in by_table[DAY_14].diagnostics]
    # The current day runs one hour ahead of now (2024-05-16 10:30)
    newest = sorted(gateway.children_of(DAY_16))[-1]
    assert newest == hour_child(DAY_16, TODAY + timedelta(days=1, hours=11))


@pytest.mark.asyncio
async def test_full_sub_set_is_left_alone(engine, gateway, clock, two_level):
    clock.advance(days=1)
    await engine.run_maintenance()

    again = await engine.run_maintenance(DAY_14)

    assert again.created == 0
    assert again.sets[0].diagnostics[0].event == "sub_partition_set_full"


@pytest.mark.asyncio
async def test_reaping_a_sub_parent_removes_its_catalog_rows(engine, catalog, gateway, two_level):
    await engine.set_retention("public.events", "1 hour", RetentionMode.DROP)

    result = await engine.drop_eligible("public.events")

    assert result.count == 1
    assert await catalog.get(DAY_14) is None
    assert DAY_14 not in gateway.tables
    assert hour_child(DAY_14, TODAY - timedelta(days=1)) not in gateway.tables
    assert await catalog.get(DAY_15) is not None


@pytest.mark.asyncio
async def test_new_sub_parent_copies_sibling_template(engine, catalog, gateway, two_level):
    await catalog.save_sub_template(
        hourly(DAY_14, interval="quarter-hour"),
        await engine.lineage.siblings(DAY_14),
    )
    events = await catalog.require("public.events")

    await engine.materializer.create_partitions(events, [TODAY + timedelta(days=3)])

    day_18 = "public.events_p2024_05_18"
    template = await catalog.get_sub_template(day_18)
    assert template.interval == "quarter-hour"
    first_hour = hour_child(day_18, TODAY + timedelta(days=3))
    assert await catalog.get(first_hour) is not None
    assert gateway.children_of(first_hour) == [hour_child(first_hour, TODAY + timedelta(days=3))]


@pytest.mark.asyncio
async def test_info_reports_template_and_children(engine, two_level):
    info = await engine.info("public.events")

    assert info.sub_template.interval == "hourly"
    assert info.children == 3
    assert info.oldest_child == DAY_14
    assert info.newest_child == DAY_16
    assert info.parent_rows == 0
