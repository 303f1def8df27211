import pytest

from partsmith.modules.partitioning.config_file import (
    find_definition,
    load_partition_file,
    parse_partition_sets,
)
from partsmith.modules.partitioning.domain.types import PartitionMode, RetentionMode
from partsmith.shared.core.exceptions import ConfigurationError

PARTITION_FILE = """
partition_sets:
  - table: public.events
    column: created_at
    type: time-static
    interval: daily
    premake: 2
    retention: 30 days
    options:
      retention_keep_table: false
      constraint_cols: [account_id]
      subpartition:
        type: time-dynamic
        column: created_at
        interval: hourly
        premake: 1
  - table: public.orders
    column: id
    type: id-dynamic
    interval: 1000
    retention: 50000
    options:
      retention_schema: archive
"""


@pytest.fixture
def partition_file(tmp_path):
    path = tmp_path / "partitions.yaml"
    path.write_text(PARTITION_FILE, encoding="utf-8")
    return path


def test_load_partition_file(partition_file):
    events, orders = load_partition_file(partition_file)

    config = events.to_config()
    assert config.parent_table == "public.events"
    assert config.mode is PartitionMode.TIME_STATIC
    assert config.premake == 2
    assert config.retention == "30 days"
    assert config.retention_mode is RetentionMode.DROP
    assert config.constraint_cols == ("account_id",)

    template = events.sub_template()
    assert template.parent_table == "public.events"
    assert template.mode is PartitionMode.TIME_DYNAMIC
    assert template.interval == "hourly"
    assert template.premake == 1

    orders_config = orders.to_config()
    assert orders_config.interval == "1000"
    assert orders_config.retention == "50000"
    assert orders_config.retention_mode is RetentionMode.ARCHIVE
    assert orders_config.retention_schema == "archive"
    assert orders.sub_template() is None


def test_plain_list_is_accepted():
    definitions = parse_partition_sets(
        [{"table": "public.events", "column": "created_at", "type": "time-dynamic", "interval": "daily"}]
    )
    assert definitions[0].premake == 4
    assert definitions[0].to_config().retention_mode is RetentionMode.DETACH


def test_empty_file_declares_nothing(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_partition_file(path) == []


@pytest.mark.parametrize(
    "entry",
    [
        {"table": "events", "column": "created_at", "type": "time-static", "interval": "daily"},
        {"table": "public.events", "column": "created_at", "type": "time-weird", "interval": "daily"},
        {"table": "public.events", "column": "created_at", "type": "time-static", "interval": "daily", "premake": 0},
        {"table": "public.events", "column": "created_at", "type": "time-static", "interval": "daily", "colour": "red"},
    ],
)
def test_invalid_entries(entry):
    with pytest.raises(ConfigurationError) as exc_info:
        parse_partition_sets([entry])
    assert exc_info.value.details["errors"]


def test_duplicate_tables_rejected():
    entry = {"table": "public.events", "column": "created_at", "type": "time-static", "interval": "daily"}
    with pytest.raises(ConfigurationError, match="more than once"):
        parse_partition_sets([entry, dict(entry)])


def test_not_a_list():
    with pytest.raises(ConfigurationError):
        parse_partition_sets({"partition_sets": "public.events"})


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="does not exist"):
        load_partition_file(tmp_path / "missing.yaml")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("partition_sets: [\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="not valid YAML"):
        load_partition_file(path)


def test_find_definition(partition_file):
    definitions = load_partition_file(partition_file)
    assert find_definition(definitions, "public.orders").column == "id"
    with pytest.raises(ConfigurationError):
        find_definition(definitions, "public.missing")
