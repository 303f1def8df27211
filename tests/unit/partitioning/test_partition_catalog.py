from dataclasses import replace
from datetime import datetime

import pytest

from partsmith.modules.partitioning.domain.types import (
    CustomIntervalRange,
    PartitionMode,
    PartitionSetConfig,
    RetentionMode,
    SubPartitionTemplate,
)
from partsmith.shared.core.exceptions import (
    ConfigurationMissingError,
    InvalidIntervalError,
    InvalidPartitionConfigError,
    InvalidPartitionTypeError,
    SubPartitionTemplateMismatchError,
)


def _daily(table: str = "public.events", **overrides) -> PartitionSetConfig:
    return PartitionSetConfig(
        parent_table=table,
        mode=PartitionMode.TIME_STATIC,
        control="created_at",
        interval="1 day",
        premake=2,
        **overrides,
    )


def _hourly_template(parent: str, **overrides) -> SubPartitionTemplate:
    fields = dict(
        parent_table=parent,
        mode=PartitionMode.TIME_DYNAMIC,
        control="created_at",
        interval="hourly",
        premake=2,
    )
    fields.update(overrides)
    return SubPartitionTemplate(**fields)


@pytest.mark.asyncio
async def test_create_stores_canonical_configuration(catalog):
    stored = await catalog.create(_daily(constraint_cols=("account_id",), retention="30 days"))
    assert stored.interval == "daily"
    assert stored.datetime_string == "YYYY_MM_DD"

    loaded = await catalog.get("public.events")
    assert loaded == stored
    assert loaded.constraint_cols == ("account_id",)
    assert loaded.retention_mode is RetentionMode.DETACH


@pytest.mark.asyncio
async def test_create_rejects_duplicate(catalog):
    await catalog.create(_daily())
    with pytest.raises(InvalidPartitionConfigError):
        await catalog.create(_daily())


@pytest.mark.asyncio
async def test_require_missing_raises(catalog):
    assert await catalog.get("public.missing") is None
    with pytest.raises(ConfigurationMissingError) as exc:
        await catalog.require("public.missing")
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_list_configs_filters(catalog):
    await catalog.create(_daily("public.a_events", retention="7 days"))
    await catalog.create(_daily("public.b_events", use_scheduled_maintenance=False))
    await catalog.create(_daily("public.c_events"))

    assert [c.parent_table for c in await catalog.list_configs()] == [
        "public.a_events",
        "public.b_events",
        "public.c_events",
    ]
    scheduled = await catalog.list_configs(scheduled_only=True)
    assert [c.parent_table for c in scheduled] == ["public.a_events", "public.c_events"]
    with_retention = await catalog.list_configs(with_retention=True)
    assert [c.parent_table for c in with_retention] == ["public.a_events"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, error",
    [
        ({"mode": "time-weird"}, InvalidPartitionTypeError),
        ({"interval": "45 minutes"}, InvalidIntervalError),
        ({"premake": 0}, InvalidPartitionConfigError),
        ({"retention_mode": RetentionMode.ARCHIVE}, InvalidPartitionConfigError),
        ({"mode": PartitionMode.TIME_DYNAMIC, "use_scheduled_maintenance": False}, InvalidPartitionConfigError),
        (
            {"mode": PartitionMode.ID_DYNAMIC, "control": "id", "interval": "10", "use_scheduled_maintenance": False},
            InvalidPartitionConfigError,
        ),
    ],
)
async def test_create_rejects_invalid_configuration(catalog, overrides, error):
    fields = dict(
        parent_table="public.events",
        mode=PartitionMode.TIME_STATIC,
        control="created_at",
        interval="daily",
    )
    fields.update(overrides)
    with pytest.raises(error):
        await catalog.create(PartitionSetConfig(**fields))
    assert await catalog.get("public.events") is None


@pytest.mark.asyncio
async def test_id_configuration_validates_interval_and_retention(catalog):
    config = PartitionSetConfig(
        parent_table="public.orders", mode=PartitionMode.ID_STATIC, control="id", interval="1000", retention="5000"
    )
    stored = await catalog.create(config)
    assert stored.id_interval == 1000
    assert stored.retention_id == 5000
    assert stored.datetime_string is None

    with pytest.raises(InvalidIntervalError):
        await catalog.create(
            PartitionSetConfig(
                parent_table="public.orders_2", mode=PartitionMode.ID_STATIC, control="id", interval="1000",
                retention="three",
            )
        )


@pytest.mark.asyncio
async def test_update_and_undo_flag(catalog):
    stored = await catalog.create(_daily())
    await catalog.update(replace(stored, premake=6))
    await catalog.set_undo_in_progress("public.events", True)

    loaded = await catalog.require("public.events")
    assert loaded.premake == 6
    assert loaded.undo_in_progress is True

    with pytest.raises(ConfigurationMissingError):
        await catalog.set_undo_in_progress("public.missing", True)


@pytest.mark.asyncio
async def test_delete_removes_templates_and_custom_ranges(catalog):
    await catalog.create(_daily())
    await catalog.save_sub_template(_hourly_template("public.events"))
    await catalog.create(
        PartitionSetConfig(
            parent_table="public.metrics",
            mode=PartitionMode.TIME_CUSTOM,
            control="created_at",
            interval="45 minutes",
        )
    )
    await catalog.add_custom_range(
        CustomIntervalRange("public.metrics", "public.metrics_p2024_05_15_1000",
                            datetime(2024, 5, 15, 10), datetime(2024, 5, 15, 10, 45))
    )

    removed = await catalog.delete(["public.events", "public.metrics", "public.events"])

    assert removed == 2
    assert await catalog.list_configs() == []
    assert await catalog.get_sub_template("public.events") is None
    assert await catalog.list_custom_ranges("public.metrics") == []
    assert await catalog.delete([]) == 0


@pytest.mark.asyncio
async def test_sub_template_round_trip(catalog):
    await catalog.create(_daily())
    saved = await catalog.save_sub_template(_hourly_template("public.events", interval="1 hour"))
    assert saved.interval == "hourly"
    assert await catalog.get_sub_template("public.events") == saved


@pytest.mark.asyncio
async def test_sub_template_requires_configured_parent(catalog):
    with pytest.raises(ConfigurationMissingError):
        await catalog.save_sub_template(_hourly_template("public.events"))


@pytest.mark.asyncio
async def test_sibling_templates_must_match(catalog):
    first = "public.events_p2024_05_14"
    second = "public.events_p2024_05_15"
    await catalog.create(_daily(first))
    await catalog.create(_daily(second))
    await catalog.save_sub_template(_hourly_template(first))

    await catalog.save_sub_template(_hourly_template(second), siblings=[first, second])
    with pytest.raises(SubPartitionTemplateMismatchError):
        await catalog.save_sub_template(_hourly_template(second, premake=5), siblings=[first])


@pytest.mark.asyncio
async def test_custom_ranges_are_half_open(catalog):
    await catalog.create(
        PartitionSetConfig(
            parent_table="public.metrics",
            mode=PartitionMode.TIME_CUSTOM,
            control="created_at",
            interval="45 minutes",
        )
    )
    for start, end, child in [
        (datetime(2024, 5, 15, 10, 45), datetime(2024, 5, 15, 11, 30), "public.metrics_p2024_05_15_1045"),
        (datetime(2024, 5, 15, 10), datetime(2024, 5, 15, 10, 45), "public.metrics_p2024_05_15_1000"),
    ]:
        await catalog.add_custom_range(CustomIntervalRange("public.metrics", child, start, end))

    found = await catalog.find_custom_range("public.metrics", datetime(2024, 5, 15, 10, 45))
    assert found.child_table == "public.metrics_p2024_05_15_1045"
    assert found.contains(datetime(2024, 5, 15, 11))
    assert await catalog.find_custom_range("public.metrics", datetime(2024, 5, 15, 11, 30)) is None

    ranges = await catalog.list_custom_ranges("public.metrics")
    assert [r.start for r in ranges] == [datetime(2024, 5, 15, 10), datetime(2024, 5, 15, 10, 45)]

    await catalog.delete_custom_range("public.metrics", "public.metrics_p2024_05_15_1000")
    assert len(await catalog.list_custom_ranges("public.metrics")) == 1
