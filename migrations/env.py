import asyncio
from logging.config import fileConfig
import re

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy import pool
from sqlalchemy.engine import Connection

from alembic import context

from partsmith.shared.db.base import Base
# Import all models so Base knows about them!
import partsmith.models  # noqa: F401 # pylint: disable=unused-import

from partsmith.shared.core.config import get_settings
from partsmith.shared.db.session import _normalize_db_url
from sqlalchemy.ext.asyncio import create_async_engine


settings = get_settings()


# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


# Child tables created by the engine carry a "_p<suffix>" name
_PARTITION_CHILD_RE = re.compile(r"_p(\d+|\d{4}(_\d{2}){0,2}(_\d{4,6})?|\d{4}q[1-4]|\d{4}w\d{2})$")


def _is_ignored_partition_table(name: str) -> bool:
    return bool(_PARTITION_CHILD_RE.search(name))


def include_object(obj, name, type_, reflected, compare_to):
    """
    Skip partition child tables; the engine manages them outside Alembic.
    """
    obj_name = name or ""

    if type_ == "table" and reflected and compare_to is None:
        # Only the catalog tables belong to this project's migrations.
        if _is_ignored_partition_table(obj_name):
            return False

    if type_ in {"index", "foreign_key_constraint", "unique_constraint"}:
        table_name = getattr(getattr(obj, "table", None), "name", None)
        if isinstance(table_name, str) and _is_ignored_partition_table(table_name):
            return False

    return True


def compare_type(context, inspected_column, metadata_column, inspected_type, metadata_type):
    """
    Suppress type diffs that are semantically equivalent in this codebase.
    """
    inspected_name = type(inspected_type).__name__
    metadata_name = type(metadata_type).__name__

    # constraint_cols is plain JSON in the model; autogen can report
    # JSON vs JSON(astext_type=Text()) noise for PostgreSQL.
    if inspected_name in {"JSON", "JSONB"} and metadata_name in {"JSON", "JSONB"}:
        return False
    if isinstance(inspected_type, postgresql.JSON) and isinstance(metadata_type, sa.JSON):
        return False

    return None


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    Calls to context.execute() here emit the given string to the
    script output.
    """
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_object=include_object,
        compare_type=compare_type,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        include_object=include_object,
        compare_type=compare_type,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Create an async Engine and associate a connection with the context."""
    connectable = create_async_engine(
        _normalize_db_url(settings.DATABASE_URL or ""),
        poolclass=pool.NullPool,
        connect_args={"statement_cache_size": 0},
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    if not settings.DATABASE_URL:
        raise ValueError("DATABASE_URL is not set. Cannot run migrations.")
    # Escape % characters for ConfigParser interpolation
    config.set_main_option("sqlalchemy.url", settings.DATABASE_URL.replace("%", "%%"))
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
