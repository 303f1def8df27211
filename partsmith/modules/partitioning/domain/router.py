"""
Router Synthesizer.

Row routing is described by a small typed plan (RoutingPlan) and compiled
into a PL/pgSQL trigger function plus the BEFORE INSERT trigger that calls
it. The plan keeps the three routing shapes apart as data:

- STATIC_LADDER: a fixed IF/ELSIF ladder over precomputed child bounds.
- DYNAMIC_TIME / DYNAMIC_ID: the child name is computed from the value.
- CUSTOM_RANGE: the child is looked up in the custom range table.

Rows that match no existing child are returned to the parent table.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import structlog

from partsmith.modules.partitioning.domain import naming
from partsmith.modules.partitioning.domain.intervals import Granularity
from partsmith.modules.partitioning.domain.types import Bound, PartitionMode, PartitionSetConfig

logger = structlog.get_logger()

CUSTOM_RANGE_TABLE = "custom_time_partitions"


class RoutingStrategy(str, Enum):
    STATIC_LADDER = "static_ladder"
    DYNAMIC_TIME = "dynamic_time"
    DYNAMIC_ID = "dynamic_id"
    CUSTOM_RANGE = "custom_range"


@dataclass(frozen=True)
class Rung:
    lower: Bound
    upper: Bound
    child_table: str
    # Values at or above this bound ask the listener for more partitions
    notify_from: Optional[Bound] = None


@dataclass(frozen=True)
class RoutingPlan:
    parent_table: str
    control: str
    strategy: RoutingStrategy
    function: str
    trigger: str
    rungs: tuple[Rung, ...] = ()
    granularity: Optional[Granularity] = None
    id_interval: Optional[int] = None
    datetime_string: Optional[str] = None
    notify_channel: Optional[str] = None


def _literal(value: object) -> str:
    return naming.quote_literal(value)


def _notify(plan: RoutingPlan) -> str:
    payload = (
        f"json_build_object('parent_table', {_literal(plan.parent_table)}, "
        f"'value', NEW.{plan.control})::text"
    )
    return f"PERFORM pg_notify({_literal(plan.notify_channel)}, {payload});"


def _compile_ladder(plan: RoutingPlan) -> tuple[str, str]:
    column = f"NEW.{plan.control}"
    if not plan.rungs:
        return "", "        RETURN NEW;"
    lines = []
    for position, rung in enumerate(plan.rungs):
        keyword = "IF" if position == 0 else "ELSIF"
        lines.append(
            f"        {keyword} {column} >= {_literal(rung.lower)} "
            f"AND {column} < {_literal(rung.upper)} THEN"
        )
        if rung.notify_from is not None and plan.notify_channel:
            lines.append(f"            IF {column} >= {_literal(rung.notify_from)} THEN")
            lines.append(f"                {_notify(plan)}")
            lines.append("            END IF;")
        lines.append(f"            INSERT INTO {rung.child_table} VALUES (NEW.*);")
    lines.append("        ELSE")
    lines.append("            RETURN NEW;")
    lines.append("        END IF;")
    return "", "\n".join(lines)


def _truncation_sql(column: str, granularity: Granularity) -> str:
    if granularity is Granularity.HALF_HOUR:
        return f"date_trunc('hour', {column}) + interval '30 minutes' * floor(date_part('minute', {column}) / 30)"
    if granularity is Granularity.QUARTER_HOUR:
        return f"date_trunc('hour', {column}) + interval '15 minutes' * floor(date_part('minute', {column}) / 15)"
    unit = {
        Granularity.YEARLY: "year",
        Granularity.QUARTERLY: "quarter",
        Granularity.MONTHLY: "month",
        Granularity.WEEKLY: "week",
        Granularity.DAILY: "day",
        Granularity.HOURLY: "hour",
    }[granularity]
    return f"date_trunc('{unit}', {column})"


def _computed_insert(plan: RoutingPlan, suffix_sql: str) -> str:
    schema, table = naming.split_qualified(plan.parent_table)
    limit = naming.PARTITION_NAME_LIMIT
    return "\n".join([
        f"        v_suffix := {suffix_sql};",
        f"        v_table := CASE WHEN length('{table}') + length(v_suffix) >= {limit}",
        f"            THEN substr('{table}', 1, {limit} - length(v_suffix)) ELSE '{table}' END",
        f"            || '{naming.PARTITION_SEPARATOR}' || v_suffix;",
        "        IF EXISTS (SELECT 1 FROM pg_tables",
        f"                   WHERE schemaname = '{schema}' AND tablename = v_table) THEN",
        f"            EXECUTE format('INSERT INTO %I.%I SELECT ($1).*', '{schema}', v_table) USING NEW;",
        "        ELSE",
        "            RETURN NEW;",
        "        END IF;",
    ])


def _compile_dynamic_time(plan: RoutingPlan) -> tuple[str, str]:
    declare = "    v_lower timestamp;\n    v_suffix text;\n    v_table text;"
    body = "\n".join([
        f"        v_lower := {_truncation_sql(f'NEW.{plan.control}', plan.granularity)};",
        _computed_insert(plan, f"to_char(v_lower, '{plan.datetime_string}')"),
    ])
    return declare, body


def _compile_dynamic_id(plan: RoutingPlan) -> tuple[str, str]:
    declare = "    v_lower bigint;\n    v_suffix text;\n    v_table text;"
    column = f"NEW.{plan.control}"
    body = "\n".join([
        f"        v_lower := {column} - ({column} % {plan.id_interval});",
        _computed_insert(plan, "v_lower::text"),
    ])
    return declare, body


def _compile_custom(plan: RoutingPlan) -> tuple[str, str]:
    declare = "    v_child text;"
    column = f"NEW.{plan.control}"
    body = "\n".join([
        f"        SELECT child_table INTO v_child FROM {CUSTOM_RANGE_TABLE}",
        f"        WHERE parent_table = {_literal(plan.parent_table)}",
        f"          AND range_start <= {column} AND range_end > {column}",
        "        LIMIT 1;",
        "        IF v_child IS NOT NULL THEN",
        "            EXECUTE 'INSERT INTO ' || v_child || ' SELECT ($1).*' USING NEW;",
        "        ELSE",
        "            RETURN NEW;",
        "        END IF;",
    ])
    return declare, body


_COMPILERS: dict[RoutingStrategy, Callable[[RoutingPlan], tuple[str, str]]] = {
    RoutingStrategy.STATIC_LADDER: _compile_ladder,
    RoutingStrategy.DYNAMIC_TIME: _compile_dynamic_time,
    RoutingStrategy.DYNAMIC_ID: _compile_dynamic_id,
    RoutingStrategy.CUSTOM_RANGE: _compile_custom,
}


def compile_function(plan: RoutingPlan) -> str:
    declare, body = _COMPILERS[plan.strategy](plan)
    declare_block = f"DECLARE\n{declare}\n" if declare else ""
    return (
        f"CREATE OR REPLACE FUNCTION {plan.function}() RETURNS trigger\n"
        f"LANGUAGE plpgsql AS $t$\n"
        f"{declare_block}"
        f"BEGIN\n"
        f"    IF TG_OP = 'INSERT' THEN\n"
        f"{body}\n"
        f"    END IF;\n"
        f"    RETURN NULL;\n"
        f"END\n"
        f"$t$"
    )


def compile_trigger(plan: RoutingPlan) -> tuple[str, str]:
    return (
        f"DROP TRIGGER IF EXISTS {plan.trigger} ON {plan.parent_table}",
        f"CREATE TRIGGER {plan.trigger} BEFORE INSERT ON {plan.parent_table} "
        f"FOR EACH ROW EXECUTE PROCEDURE {plan.function}()",
    )


def _midpoint(lower: Bound, upper: Bound) -> Bound:
    if isinstance(lower, datetime):
        return lower + (upper - lower) / 2
    return lower + (upper - lower) // 2 + 1


class RouterSynthesizer:
    def __init__(self, catalog, gateway, calculator, notify_channel: Optional[str] = None):
        self.catalog = catalog
        self.gateway = gateway
        self.calculator = calculator
        self.notify_channel = notify_channel

    async def plan(self, config: PartitionSetConfig) -> RoutingPlan:
        common = dict(
            parent_table=config.parent_table,
            control=config.control,
            function=naming.function_name(config.parent_table),
            trigger=naming.trigger_name(config.parent_table),
        )
        if config.mode is PartitionMode.TIME_DYNAMIC:
            return RoutingPlan(
                strategy=RoutingStrategy.DYNAMIC_TIME,
                granularity=config.time_interval.granularity,
                datetime_string=config.datetime_string,
                **common,
            )
        if config.mode is PartitionMode.ID_DYNAMIC:
            return RoutingPlan(
                strategy=RoutingStrategy.DYNAMIC_ID, id_interval=config.id_interval, **common
            )
        if config.mode is PartitionMode.TIME_CUSTOM:
            return RoutingPlan(strategy=RoutingStrategy.CUSTOM_RANGE, **common)
        on_demand = not config.use_scheduled_maintenance and bool(self.notify_channel)
        return RoutingPlan(
            strategy=RoutingStrategy.STATIC_LADDER,
            rungs=tuple(await self._rungs(config, on_demand)),
            notify_channel=self.notify_channel if on_demand else None,
            **common,
        )

    async def _rungs(self, config: PartitionSetConfig, on_demand: bool) -> list[Rung]:
        """Current child first, then future children ascending, then past children descending."""
        observed_max = None
        if config.mode.is_id:
            observed_max = await self.gateway.max_control(config.parent_table, config.control)
        current = await self.calculator.current_lower(config, observed_max)
        low = self.calculator.shift(config, current, -config.premake)
        high = self.calculator.shift(config, current, config.premake)
        ordered = self.calculator.order_children(
            config, await self.gateway.list_children(config.parent_table)
        )
        lowers = [lower for lower, _ in ordered]

        present, future, past = [], [], []
        for position, (lower, child) in enumerate(ordered):
            if not low <= lower <= high:
                continue
            upper = self.calculator.shift(config, lower, 1)
            notify_from = None
            if on_demand and lower >= current and len(lowers) - position - 1 < config.premake:
                notify_from = _midpoint(lower, upper)
            rung = Rung(lower=lower, upper=upper, child_table=child, notify_from=notify_from)
            if lower == current:
                present.append(rung)
            elif lower > current:
                future.append(rung)
            else:
                past.append(rung)
        past.reverse()
        return present + future + past

    async def synthesize(self, config: PartitionSetConfig) -> list[str]:
        plan = await self.plan(config)
        drop, create = compile_trigger(plan)
        return [compile_function(plan), drop, create]

    async def install(self, config: PartitionSetConfig) -> None:
        for statement in await self.synthesize(config):
            await self.gateway.execute_routing_ddl(statement)
        logger.info(
            "router_installed",
            parent_table=config.parent_table,
            mode=config.mode.value,
        )

    async def refresh(self, config: PartitionSetConfig) -> None:
        """Static ladders embed child bounds and must be rebuilt after the child set changes."""
        if config.mode.is_static:
            await self.install(config)

    async def remove(self, config: PartitionSetConfig) -> None:
        await self.gateway.drop_trigger(naming.trigger_name(config.parent_table), config.parent_table)
        await self.gateway.drop_function(naming.function_name(config.parent_table))
        logger.info("router_removed", parent_table=config.parent_table)
