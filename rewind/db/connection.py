"""Database connection factory.

Provides a singleton async connection to SQLite (default) with WAL mode,
or an asyncpg pool when REWIND_DB_BACKEND=postgres.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Union

import aiosqlite
import asyncpg

from rewind import config
from rewind.timeouts import DATABASE_SHUTDOWN_TIMEOUT

logger = logging.getLogger("rewind.db")

# Type alias for DB connection/pool
DbConnection = Union[aiosqlite.Connection, Any]  # Any to support asyncpg.Pool

_connection: DbConnection | None = None


async def configure_sqlite(conn: aiosqlite.Connection) -> aiosqlite.Connection:
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def open_sqlite(path: Path | str) -> aiosqlite.Connection:
    if str(path) != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(path))
    return await configure_sqlite(conn)


async def get_connection() -> DbConnection:
    """Return the singleton database connection/pool, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    if config.DB_BACKEND == "postgres":
        logger.info("Connecting to PostgreSQL: %s", config.DATABASE_URL)
        _connection = await asyncpg.create_pool(config.DATABASE_URL)
        return _connection

    _connection = await open_sqlite(config.DB_PATH)
    logger.info("Database connection established: %s", config.DB_PATH)
    return _connection


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is None:
        return
    try:
        await asyncio.wait_for(_connection.close(), timeout=DATABASE_SHUTDOWN_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Timed out closing database connection")
    _connection = None
    logger.info("Database connection closed")


@asynccontextmanager
async def transaction(db: DbConnection) -> AsyncIterator[Any]:
    """Yield a handle whose writes commit together or not at all.

    SQLite yields the connection itself; Postgres yields a pooled
    connection inside ``conn.transaction()``.
    """
    if isinstance(db, aiosqlite.Connection):
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        else:
            await db.commit()
        return

    if isinstance(db, asyncpg.Pool):
        async with db.acquire() as conn:
            async with conn.transaction():
                yield conn
        return

    async with db.transaction():
        yield db


async def ping(db: DbConnection) -> bool:
    if isinstance(db, aiosqlite.Connection):
        async with db.execute("SELECT 1") as cur:
            row = await cur.fetchone()
        return bool(row and row[0] == 1)
    return await db.fetchval("SELECT 1") == 1
