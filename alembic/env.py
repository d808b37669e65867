"""
Alembic environment for PostPilot.

The database URL always comes from `Settings.database_url` (DATABASE_URL /
.env); `sqlalchemy.url` in alembic.ini stays empty. Migrations run on the
async engine. SQLite (local dev, throwaway databases) uses batch mode so
ALTER TABLE migrations work there too.
"""

import asyncio
import ssl
from logging.config import fileConfig
from typing import Any

from sqlalchemy import pool
from sqlalchemy.engine import Connection, make_url
from sqlalchemy.ext.asyncio import create_async_engine

from alembic import context
from postpilot.config import get_settings
from postpilot.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# Hosts reached without TLS (docker compose service name included)
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "db"})

# libpq-only query parameters that asyncpg rejects
LIBPQ_ONLY_PARAMS = ("sslmode", "channel_binding", "options")


def migration_target(database_url: str) -> tuple[str, dict[str, Any]]:
    """
    Get the URL and connect args to migrate against.

    Postgres URLs lose libpq-only parameters; remote hosts get TLS with the
    default context. SQLite URLs pass through unchanged.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        return database_url, {}

    query = {k: v for k, v in url.query.items() if k not in LIBPQ_ONLY_PARAMS}
    url = url.set(query=query)

    connect_args: dict[str, Any] = {}
    if url.host not in LOCAL_HOSTS:
        connect_args["ssl"] = ssl.create_default_context()
    return url.render_as_string(hide_password=False), connect_args


db_url, connect_args = migration_target(get_settings().database_url)
is_sqlite = db_url.startswith("sqlite")


def _configure(**kwargs: Any) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=is_sqlite,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of connecting."""
    _configure(url=db_url, literal_binds=True, dialect_opts={"paramstyle": "named"})

    with context.begin_transaction():
        context.run_migrations()


def _run_sync_migrations(connection: Connection) -> None:
    _configure(connection=connection)

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_engine(db_url, poolclass=pool.NullPool, connect_args=connect_args)

    async with engine.connect() as connection:
        await connection.run_sync(_run_sync_migrations)

    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
