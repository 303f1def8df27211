"""
partsmith command line.

Each command opens one session, runs one engine operation, commits, and
prints the result as JSON on stdout.
"""
import argparse
import asyncio
import json
import sys
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

import structlog

from partsmith.modules.partitioning.config_file import (
    PartitionOptions,
    find_definition,
    load_partition_file,
)
from partsmith.modules.partitioning.domain.engine import PartitionEngine
from partsmith.modules.partitioning.domain.results import OperationResult
from partsmith.modules.partitioning.domain.types import MigrationOrder, PartitionMode, RetentionMode
from partsmith.shared.core.config import get_settings
from partsmith.shared.core.exceptions import ConfigurationError, PartsmithException
from partsmith.shared.core.logging import setup_logging
from partsmith.shared.db.base import Base
from partsmith.shared.db.session import async_session_maker, get_engine

logger = structlog.get_logger()


def _jsonable(value: Any) -> Any:
    if isinstance(value, OperationResult):
        return value.as_dict()
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {key: _jsonable(item) for key, item in asdict(value).items()}
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def emit(value: Any) -> None:
    sys.stdout.write(json.dumps(_jsonable(value), indent=2, default=str) + "\n")


async def run_with_engine(operation: Callable[[PartitionEngine], Awaitable[Any]]) -> Any:
    async with async_session_maker() as db:
        try:
            result = await operation(PartitionEngine.for_session(db))
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return result


async def cmd_install(args: argparse.Namespace) -> Any:
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("catalog_installed")
    return {"installed": sorted(Base.metadata.tables)}


async def cmd_create(args: argparse.Namespace) -> Any:
    if args.name:
        path = args.config or get_settings().PARTITION_CONFIG_PATH
        if not path:
            raise ConfigurationError("--name needs --config or PARTITION_CONFIG_PATH")
        definition = find_definition(load_partition_file(path), args.name)
        config, template = definition.to_config(), definition.sub_template()
    else:
        missing = [flag for flag in ("table", "column", "type", "interval") if not getattr(args, flag)]
        if missing:
            raise ConfigurationError(
                "create needs --name or explicit flags", details={"missing": missing}
            )
        config = None
        template = None

    async def operation(engine: PartitionEngine) -> Any:
        if config is not None:
            results = [await engine.partition_sets.create_parent(config)]
        else:
            results = [
                await engine.create_parent(
                    args.table,
                    args.column,
                    args.type,
                    args.interval,
                    premake=args.premake,
                    retention=args.retention,
                    constraint_cols=args.constraint_cols or (),
                    use_scheduled_maintenance=not args.no_scheduled_maintenance,
                )
            ]
        if template is not None:
            results.append(await engine.create_sub_parent(template))
        return results

    return await run_with_engine(operation)


async def cmd_maintenance(args: argparse.Namespace) -> Any:
    return await run_with_engine(lambda engine: engine.run_maintenance(args.table))


def _batch_options(args: argparse.Namespace) -> PartitionOptions:
    """
    Batch settings for migrate/undo. Flags win over the table's entry in the
    partition file, which wins over the process defaults.
    """
    settings = get_settings()
    options = PartitionOptions(
        batch_count=settings.DEFAULT_BATCH_COUNT,
        lock_wait=settings.DEFAULT_LOCK_WAIT_SECONDS,
    )
    path = args.config or settings.PARTITION_CONFIG_PATH
    if path:
        for definition in load_partition_file(path):
            if definition.table == args.table:
                options = definition.options
                break
    overrides: dict[str, Any] = {}
    if args.batch_count is not None:
        overrides["batch_count"] = args.batch_count
    if args.lock_wait is not None:
        overrides["lock_wait"] = args.lock_wait
    if getattr(args, "keep_table", None) is not None:
        overrides["drop_table_on_undo"] = not args.keep_table
    return options.model_copy(update=overrides)


async def cmd_undo(args: argparse.Namespace) -> Any:
    options = _batch_options(args)
    return await run_with_engine(
        lambda engine: engine.undo(
            args.table,
            batch_count=options.batch_count,
            keep_table=not options.drop_table_on_undo,
            lock_wait_seconds=options.lock_wait,
        )
    )


async def cmd_migrate(args: argparse.Namespace) -> Any:
    options = _batch_options(args)
    return await run_with_engine(
        lambda engine: engine.migrate(
            args.table,
            batch_count=options.batch_count,
            batch_interval=args.batch_interval,
            lock_wait_seconds=options.lock_wait,
            order=args.order,
        )
    )


async def cmd_info(args: argparse.Namespace) -> Any:
    return await run_with_engine(lambda engine: engine.info(args.table))


async def cmd_children(args: argparse.Namespace) -> Any:
    return await run_with_engine(lambda engine: engine.list_children(args.table, args.order))


async def cmd_check(args: argparse.Namespace) -> Any:
    return await run_with_engine(lambda engine: engine.check_parents())


async def cmd_set_retention(args: argparse.Namespace) -> Any:
    return await run_with_engine(
        lambda engine: engine.set_retention(args.table, args.retention, args.mode, args.schema)
    )


async def cmd_remove_retention(args: argparse.Namespace) -> Any:
    return await run_with_engine(lambda engine: engine.remove_retention(args.table))


async def cmd_reapply_privileges(args: argparse.Namespace) -> Any:
    children = await run_with_engine(lambda engine: engine.reapply_privileges(args.table))
    return {"parent_table": args.table, "children": children}


async def cmd_daemon(args: argparse.Namespace) -> Any:
    from partsmith.modules.partitioning.listener import PremakeListener
    from partsmith.modules.partitioning.scheduler import MaintenanceScheduler

    scheduler = MaintenanceScheduler(async_session_maker)
    listener = PremakeListener(get_engine(), async_session_maker)
    scheduler.start()
    await listener.start()
    try:
        await asyncio.Event().wait()
    finally:
        await listener.stop()
        scheduler.stop()


COMMANDS: dict[str, Callable[[argparse.Namespace], Awaitable[Any]]] = {
    "install": cmd_install,
    "create": cmd_create,
    "maintenance": cmd_maintenance,
    "undo": cmd_undo,
    "migrate": cmd_migrate,
    "info": cmd_info,
    "children": cmd_children,
    "check": cmd_check,
    "set-retention": cmd_set_retention,
    "remove-retention": cmd_remove_retention,
    "reapply-privileges": cmd_reapply_privileges,
    "daemon": cmd_daemon,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="partsmith", description="Partition lifecycle engine")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("install", help="Create the catalog tables")

    create = commands.add_parser("create", help="Turn a table into a partition set")
    create.add_argument("--name", help="Table of an entry in the partition file")
    create.add_argument("--config", help="Partition file (defaults to PARTITION_CONFIG_PATH)")
    create.add_argument("--table")
    create.add_argument("--column")
    create.add_argument("--type", choices=[mode.value for mode in PartitionMode])
    create.add_argument("--interval")
    create.add_argument("--premake", type=int, default=4)
    create.add_argument("--retention")
    create.add_argument("--constraint-cols", nargs="*")
    create.add_argument("--no-scheduled-maintenance", action="store_true")

    maintenance = commands.add_parser("maintenance", help="Premake and retention for one or all sets")
    maintenance.add_argument("--table")

    def add_batch_flags(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--table", required=True)
        sub.add_argument("--config", help="Partition file (defaults to PARTITION_CONFIG_PATH)")
        sub.add_argument("--batch-count", type=int)
        sub.add_argument("--lock-wait", type=float)

    undo = commands.add_parser("undo", help="Move child rows back into the parent")
    add_batch_flags(undo)
    undo.add_argument("--keep-table", action=argparse.BooleanOptionalAction)

    migrate = commands.add_parser("migrate", help="Move parent rows into children")
    add_batch_flags(migrate)
    migrate.add_argument("--batch-interval")
    migrate.add_argument(
        "--order", choices=[order.value for order in MigrationOrder], default=MigrationOrder.ASCENDING.value
    )

    for name in ("info", "remove-retention", "reapply-privileges"):
        commands.add_parser(name).add_argument("--table", required=True)

    children = commands.add_parser("children", help="List child tables with bounds and sizes")
    children.add_argument("--table", required=True)
    children.add_argument(
        "--order", choices=[order.value for order in MigrationOrder], default=MigrationOrder.ASCENDING.value
    )

    commands.add_parser("check", help="Report rows left in parent tables")

    retention = commands.add_parser("set-retention", help="Configure retention for a set")
    retention.add_argument("--table", required=True)
    retention.add_argument("--retention", required=True)
    retention.add_argument("--mode", choices=[mode.value for mode in RetentionMode])
    retention.add_argument("--schema")

    commands.add_parser("daemon", help="Run the maintenance scheduler and premake listener")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    setup_logging()
    args = build_parser().parse_args(argv)
    try:
        emit(asyncio.run(COMMANDS[args.command](args)))
    except PartsmithException as e:
        logger.error("command_failed", command=args.command, code=e.code, error=e.message)
        emit({"error": e.message, "code": e.code, "details": e.details})
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
