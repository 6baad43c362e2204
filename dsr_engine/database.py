"""
Database engine and session factory for the SQL stores (SQLAlchemy 2.0 async).

There is no request-scoped session: every SQL store operation opens its own
session from get_session_factory(), and status changes are conditional
UPDATEs (compare-and-swap) inside that one operation. No transaction is held
open while a handler awaits the ledger, the dispatcher or another store.

In-memory mode (USE_IN_MEMORY_STORE=true) never calls init_db().
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from dsr_engine.config import Environment, Settings, get_settings

log = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base shared by every table in dsr_engine.models.

    alembic/env.py imports dsr_engine.models so that this metadata is
    complete before autogenerate compares it.
    """


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.db_echo_sql}
    if settings.environment == Environment.TEST:
        # Integration tests share one database across event loops.
        options["poolclass"] = NullPool
        return options
    options.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=settings.db_pool_recycle_seconds,
    )
    return options


def init_db(settings: Settings | None = None) -> async_sessionmaker[AsyncSession]:
    """Create the engine and the session factory used by the SQL stores."""
    global _engine, _session_factory
    cfg = settings or get_settings()
    if cfg.use_in_memory_store:
        raise RuntimeError("init_db() called while USE_IN_MEMORY_STORE is enabled")

    _engine = create_async_engine(cfg.database_url, **_engine_options(cfg))
    # Stores read rows back after commit to build domain records.
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    log.info(
        "database.initialized",
        url=cfg.database_url.split("@")[-1],
        pool_size=None if cfg.environment == Environment.TEST else cfg.db_pool_size,
    )
    return _session_factory


async def close_db() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    log.info("database.closed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def ping_database() -> str:
    """Readiness check: ``ok``, ``not_initialized`` or ``error: ...``."""
    if _engine is None:
        return "not_initialized"
    try:
        async with _engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        log.warning("database.ping_failed", error=str(exc))
        return f"error: {exc}"
    return "ok"
