"""Tests for schema migrations."""
import os

import aiosqlite
import pytest

from arcane.storage.migrations import (
    LATEST_VERSION,
    apply_migrations,
    get_schema_version,
    init_schema_version,
)

SCHEMA = os.path.join(os.path.dirname(__file__), "..", "arcane", "storage", "schema.sql")


async def _v1_connection(path: str) -> aiosqlite.Connection:
    conn = await aiosqlite.connect(path, isolation_level=None)
    with open(SCHEMA, "r", encoding="utf-8") as f:
        await conn.executescript(f.read())
    await init_schema_version(conn)
    return conn


@pytest.mark.asyncio
async def test_fresh_database_starts_at_v1(temp_db):
    conn = await _v1_connection(temp_db)
    try:
        assert await get_schema_version(conn) == 1
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_version_zero_without_table(temp_db):
    conn = await aiosqlite.connect(temp_db)
    try:
        assert await get_schema_version(conn) == 0
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_duel_players_backfilled_from_json(temp_db):
    conn = await _v1_connection(temp_db)
    try:
        await conn.execute(
            "INSERT INTO duels (id, status, round_limit, wizards_json, players_json, shortcode, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            ("d1", "WAITING_FOR_PLAYERS", "3", '["w1", "w2"]', '["p1", "p2"]', "ABC123", 1.0),
        )

        await apply_migrations(conn)

        assert await get_schema_version(conn) == LATEST_VERSION
        async with conn.execute("SELECT player_id FROM duel_players WHERE duel_id = ? ORDER BY player_id", ("d1",)) as cur:
            rows = await cur.fetchall()
        assert [r[0] for r in rows] == ["p1", "p2"]
    finally:
        await conn.close()


@pytest.mark.asyncio
async def test_partial_target_version(temp_db):
    conn = await _v1_connection(temp_db)
    try:
        await apply_migrations(conn, target_version=2)
        assert await get_schema_version(conn) == 2

        async with conn.execute("SELECT name FROM sqlite_master WHERE name = 'duel_players'") as cur:
            assert await cur.fetchone() is None

        await apply_migrations(conn)
        assert await get_schema_version(conn) == LATEST_VERSION
    finally:
        await conn.close()
