"""Alembic environment for the dsr_engine schema.

The URL comes from the application settings unless overridden on the
command line (``alembic -x database_url=... upgrade head``). Online
migrations run through the asyncpg engine; offline mode renders SQL.

Audit events, deletion certificates and encryption key tombstones are
append-only. Autogenerate never proposes dropping those tables, even when a
model is renamed or removed.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

import dsr_engine.models  # noqa: F401 - populates Base.metadata
from dsr_engine.config import get_settings
from dsr_engine.database import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

PROTECTED_TABLES = frozenset({"compliance_audit_events", "deletion_certificates", "encryption_keys"})


def _database_url() -> str:
    override = context.get_x_argument(as_dictionary=True).get("database_url")
    if override:
        return override
    settings = get_settings()
    if settings.use_in_memory_store:
        raise RuntimeError("USE_IN_MEMORY_STORE is set; there is no database to migrate")
    return settings.database_url


def include_object(obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any) -> bool:
    """Skip drops of protected tables that exist in the database only."""
    return not (type_ == "table" and reflected and compare_to is None and name in PROTECTED_TABLES)


def _configure(**kwargs: Any) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_object=include_object,
        compare_type=True,
        compare_server_default=True,
        **kwargs,
    )


def _migrate(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def _migrate_online(url: str) -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = url
    engine = async_engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()
else:
    asyncio.run(_migrate_online(_database_url()))
