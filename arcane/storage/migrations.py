"""Versioned schema migrations applied on top of schema.sql."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, List

import aiosqlite


log = logging.getLogger(__name__)


# Migration functions take a connection and perform schema changes
Migration = Callable[[aiosqlite.Connection], Awaitable[None]]


async def _v2_round_status_index(conn: aiosqlite.Connection) -> None:
    # Stale PROCESSING round sweeps filter on status across all duels
    await conn.execute("CREATE INDEX IF NOT EXISTS idx_rounds_status ON rounds(status, updated_at)")


async def _v3_duel_players_lookup(conn: aiosqlite.Connection) -> None:
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS duel_players (
            duel_id TEXT NOT NULL REFERENCES duels(id) ON DELETE CASCADE,
            player_id TEXT NOT NULL,
            PRIMARY KEY (duel_id, player_id)
        )
        """
    )
    await conn.execute("CREATE INDEX IF NOT EXISTS idx_duel_players_player ON duel_players(player_id)")
    # Backfill from the JSON column
    await conn.execute(
        """
        INSERT OR IGNORE INTO duel_players (duel_id, player_id)
        SELECT duels.id, json_each.value FROM duels, json_each(duels.players_json)
        """
    )


# v1 is the initial schema from schema.sql; MIGRATIONS[0] upgrades v1 -> v2, etc.
MIGRATIONS: List[Migration] = [
    _v2_round_status_index,
    _v3_duel_players_lookup,
]

LATEST_VERSION = len(MIGRATIONS) + 1


async def get_schema_version(conn: aiosqlite.Connection) -> int:
    """Return the current schema version (0 if no version table exists)."""
    try:
        async with conn.execute("SELECT version FROM schema_version LIMIT 1") as cur:
            row = await cur.fetchone()
            return int(row[0]) if row else 0
    except aiosqlite.OperationalError:
        # Table doesn't exist yet
        return 0


async def set_schema_version(conn: aiosqlite.Connection, version: int) -> None:
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    await conn.execute("DELETE FROM schema_version")
    await conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
    await conn.commit()


async def apply_migrations(conn: aiosqlite.Connection, target_version: int | None = None) -> None:
    """Apply pending migrations to bring the database up to ``target_version`` (latest by default)."""
    current = await get_schema_version(conn)

    if target_version is None:
        target_version = LATEST_VERSION

    if current >= target_version:
        log.debug("Database schema is up to date (v%d)", current)
        return

    log.info("Migrating database schema from v%d to v%d", current, target_version)

    for version in range(max(current, 1) + 1, target_version + 1):
        if version - 2 >= len(MIGRATIONS):
            log.warning("No migration defined for version %d", version)
            break

        migration = MIGRATIONS[version - 2]
        log.info("Applying migration v%d...", version)

        try:
            await migration(conn)
            await set_schema_version(conn, version)
            log.info("Migration v%d applied successfully", version)
        except Exception as e:
            log.error("Migration v%d failed: %s", version, e, exc_info=True)
            raise


async def init_schema_version(conn: aiosqlite.Connection) -> None:
    """Mark a fresh database as v1 (the schema.sql baseline).

    Call this after applying the initial schema from schema.sql.
    """
    current = await get_schema_version(conn)
    if current == 0:
        await set_schema_version(conn, 1)
        log.info("Initialized schema version to v1")
