from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable

import aiosqlite


log = logging.getLogger(__name__)

# Retry configuration for database lock handling
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_DELAY = 0.1  # seconds


async def _with_lock_retry(op):
    """Run ``op`` retrying while SQLite reports the database as locked."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return await op()
        except aiosqlite.OperationalError as e:
            if "locked" in str(e).lower() and attempt < _DB_RETRY_ATTEMPTS - 1:
                log.debug("Database locked, retrying (attempt %d)", attempt + 1)
                await asyncio.sleep(_DB_RETRY_DELAY * (attempt + 1))
                continue
            raise


class Transaction:
    """Statements issued inside ``Database.transaction()``; nothing commits until the block exits."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Execute a statement and return the affected row count."""
        async with self.conn.execute(sql, tuple(params)) as cur:
            return cur.rowcount

    async def fetchone(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        async with self.conn.execute(sql, tuple(params)) as cur:
            return await cur.fetchone()

    async def fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        async with self.conn.execute(sql, tuple(params)) as cur:
            return list(await cur.fetchall())


@dataclass
class Database:
    path: str
    conn: aiosqlite.Connection
    # One connection is shared by every coroutine; all statements are serialized
    # so a transaction never interleaves with another caller's writes.
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @classmethod
    async def init(cls, path: str) -> "Database":
        # Create parent directory if needed (skip for in-memory databases)
        if path != ":memory:":
            parent_dir = os.path.dirname(path)
            if parent_dir:
                os.makedirs(parent_dir, exist_ok=True)

        # isolation_level=None: transactions are opened explicitly with BEGIN IMMEDIATE
        conn = await aiosqlite.connect(path, isolation_level=None)
        conn.row_factory = aiosqlite.Row
        schema_path = os.path.normpath(os.path.join(os.path.dirname(__file__), "../storage/schema.sql"))
        await conn.execute("PRAGMA foreign_keys = ON;")
        try:
            await conn.execute("PRAGMA journal_mode = WAL;")
            await conn.execute("PRAGMA synchronous = NORMAL;")
            await conn.execute("PRAGMA temp_store = MEMORY;")
        except aiosqlite.OperationalError as e:
            log.debug("Optional PRAGMA not applied: %s", e)
        if not os.path.isfile(schema_path):
            log.error("Schema file not found: %s", schema_path)
            raise FileNotFoundError(f"Database schema not found: {schema_path}")
        with open(schema_path, "r", encoding="utf-8") as f:
            await conn.executescript(f.read())

        from ..storage.migrations import apply_migrations, init_schema_version

        await init_schema_version(conn)
        await apply_migrations(conn)

        return cls(path=path, conn=conn)

    async def close(self) -> None:
        await self.conn.close()

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Run a read-modify-write atomically.

        Usage:
            async with db.transaction() as tx:
                row = await tx.fetchone("SELECT ...")
                await tx.execute("UPDATE ...")
        """
        async with self._lock:
            await _with_lock_retry(lambda: self.conn.execute("BEGIN IMMEDIATE"))
            try:
                yield Transaction(self.conn)
            except BaseException:
                await self.conn.execute("ROLLBACK")
                raise
            else:
                await self.conn.execute("COMMIT")

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Execute a single statement in its own transaction with retry on database lock."""

        async def _op() -> int:
            async with self.conn.execute(sql, tuple(params)) as cur:
                return cur.rowcount

        async with self._lock:
            return await _with_lock_retry(_op)

    async def fetchone(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        """Fetch one row with retry on database lock."""

        async def _op() -> aiosqlite.Row | None:
            async with self.conn.execute(sql, tuple(params)) as cur:
                return await cur.fetchone()

        async with self._lock:
            return await _with_lock_retry(_op)

    async def fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        """Fetch all rows with retry on database lock."""

        async def _op() -> list[aiosqlite.Row]:
            async with self.conn.execute(sql, tuple(params)) as cur:
                return list(await cur.fetchall())

        async with self._lock:
            return await _with_lock_retry(_op)
