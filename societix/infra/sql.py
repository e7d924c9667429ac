# societix/infra/sql.py
"""
Async engine for SQLite (development, tests) or Postgres.

`make_async_engine` returns the engine, the session factory and `gated`, an
async context manager that bounds how many reconciliations and session-store
calls hold a connection at once.
"""
from __future__ import annotations
import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.environ.get("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.environ.get("DB_POOL_TIMEOUT", "30"))
DB_GATE_LIMIT = int(os.environ.get("DB_GATE_LIMIT", "10"))

# plain scheme -> async driver
DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
}

SQLITE_PRAGMAS = (
    "journal_mode=WAL",
    "busy_timeout=5000",
    "synchronous=NORMAL",
    # attendees.event_id references events.id
    "foreign_keys=ON",
)

Gated = Callable[[], AsyncContextManager[None]]


def async_url(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if not sep:
        raise ValueError(f"not a database URL: {url!r}")
    return f"{DRIVERS.get(scheme, scheme)}://{rest}"


def make_gate(limit: int = DB_GATE_LIMIT) -> Gated:
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated() -> AsyncIterator[None]:
        async with sem:
            yield

    return gated


def _use_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(f"PRAGMA {pragma};")
        cur.close()


def make_async_engine(
        database_url: str,
) -> Tuple[AsyncEngine, async_sessionmaker, Gated]:
    url = async_url(database_url)
    kw = dict(pool_pre_ping=True)
    if url.startswith("postgresql+asyncpg://"):
        kw.update(
            pool_size=DB_POOL_SIZE,
            max_overflow=DB_MAX_OVERFLOW,
            pool_timeout=DB_POOL_TIMEOUT,
        )

    engine = create_async_engine(url, **kw)
    if url.startswith("sqlite+aiosqlite://"):
        _use_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine, SessionAsync, make_gate()
