"""Alembic environment for the escrow engine (async engine, PostgreSQL).

Extra arguments:
    alembic -x url=postgresql+asyncpg://... upgrade head
    alembic -x schema=test_gw0 upgrade head   (sets search_path)
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from escrow_engine.config import settings
from escrow_engine.database import Base
from escrow_engine.models import (  # noqa: F401  register every table on Base.metadata
    actor,
    audit,
    dispute,
    insurance,
    milestone,
    notification,
    payment,
    transaction,
)

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

x_args = context.get_x_argument(as_dictionary=True)
database_url = x_args.get("url", settings.database_url)
schema = x_args.get("schema")


def _configure(**kwargs) -> None:  # type: ignore[no-untyped-def]
    context.configure(
        target_metadata=Base.metadata,
        compare_type=True,
        version_table_schema=schema,
        **kwargs,
    )


def run_offline() -> None:
    """Emit SQL to stdout instead of connecting."""
    _configure(url=database_url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_online() -> None:
    connect_args = {"server_settings": {"search_path": schema}} if schema else {}
    engine = create_async_engine(database_url, connect_args=connect_args)
    try:
        async with engine.begin() as connection:
            await connection.run_sync(_run_sync)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    asyncio.run(run_online())
