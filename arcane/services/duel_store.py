from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol

import aiosqlite

from ..models.duel import (
    Duel,
    DuelStatus,
    Round,
    RoundKind,
    RoundOutcome,
    RoundStatus,
    Spell,
    parse_round_limit,
)
from .db import Database


log = logging.getLogger(__name__)


class _Executor(Protocol):
    async def execute(self, sql: str, params: Any = ()) -> int: ...

    async def fetchone(self, sql: str, params: Any = ()) -> aiosqlite.Row | None: ...

    async def fetchall(self, sql: str, params: Any = ()) -> list[aiosqlite.Row]: ...


_DUEL_COLUMNS = (
    "id, status, round_limit, wizards_json, players_json, current_round, points_json, "
    "hit_points_json, pending_actors_json, winners_json, losers_json, shortcode, "
    "featured_illustration, is_campaign, text_only_mode, text_only_reason, "
    "image_credit_consumed, image_credit_consumed_by, created_at"
)
_DUEL_PLACEHOLDERS = ", ".join(["?"] * len(_DUEL_COLUMNS.split(",")))
_ROUND_COLUMNS = "id, duel_id, round_number, kind, status, spells_json, outcome_json, updated_at"


def _dump_set(values: set[str] | None) -> str | None:
    if values is None:
        return None
    return json.dumps(sorted(values))


def _load_set(raw: str | None) -> set[str] | None:
    if raw is None:
        return None
    return set(json.loads(raw))


def duel_from_row(row: aiosqlite.Row) -> Duel:
    raw_limit = json.loads(row["round_limit"])
    return Duel(
        id=row["id"],
        status=DuelStatus(row["status"]),
        round_limit=parse_round_limit(raw_limit),
        wizards=list(json.loads(row["wizards_json"])),
        players=list(json.loads(row["players_json"])),
        current_round=int(row["current_round"]),
        points={k: int(v) for k, v in json.loads(row["points_json"]).items()},
        hit_points={k: int(v) for k, v in json.loads(row["hit_points_json"]).items()},
        pending_actors=set(json.loads(row["pending_actors_json"])),
        winners=_load_set(row["winners_json"]),
        losers=_load_set(row["losers_json"]),
        shortcode=row["shortcode"],
        featured_illustration=row["featured_illustration"],
        is_campaign=bool(row["is_campaign"]),
        text_only_mode=bool(row["text_only_mode"]),
        text_only_reason=row["text_only_reason"],
        image_credit_consumed=bool(row["image_credit_consumed"]),
        image_credit_consumed_by=row["image_credit_consumed_by"],
        created_at=float(row["created_at"]),
    )


def round_from_row(row: aiosqlite.Row) -> Round:
    spells = {k: Spell.model_validate(v) for k, v in json.loads(row["spells_json"] or "{}").items()}
    outcome = RoundOutcome.model_validate_json(row["outcome_json"]) if row["outcome_json"] else None
    return Round(
        id=row["id"],
        duel_id=row["duel_id"],
        round_number=int(row["round_number"]),
        kind=RoundKind(row["kind"]),
        status=RoundStatus(row["status"]),
        spells=spells,
        outcome=outcome,
        updated_at=float(row["updated_at"]),
    )


def _duel_params(duel: Duel) -> tuple[Any, ...]:
    return (
        duel.status.value,
        json.dumps(duel.round_limit.to_storage()),
        json.dumps(duel.wizards),
        json.dumps(duel.players),
        duel.current_round,
        json.dumps(duel.points),
        json.dumps(duel.hit_points),
        json.dumps(sorted(duel.pending_actors)),
        _dump_set(duel.winners),
        _dump_set(duel.losers),
        duel.shortcode,
        duel.featured_illustration,
        int(duel.is_campaign),
        int(duel.text_only_mode),
        duel.text_only_reason,
        int(duel.image_credit_consumed),
        duel.image_credit_consumed_by,
    )


def _round_params(rnd: Round) -> tuple[Any, ...]:
    spells = {k: v.model_dump() for k, v in rnd.spells.items()}
    outcome = rnd.outcome.model_dump_json(exclude_none=True) if rnd.outcome else None
    return (rnd.kind.value, rnd.status.value, json.dumps(spells), outcome, rnd.updated_at)


class DuelStore:
    """Persistence for duels and their rounds.

    Every accessor takes an optional ``tx``; pass the handle from
    ``store.transaction()`` to read and write inside one atomic mutation.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def transaction(self):
        return self.db.transaction()

    def _q(self, tx: _Executor | None) -> _Executor:
        return tx if tx is not None else self.db

    # ---------------------- Duels ----------------------
    async def get_duel(self, duel_id: str, tx: _Executor | None = None) -> Duel | None:
        row = await self._q(tx).fetchone(f"SELECT {_DUEL_COLUMNS} FROM duels WHERE id = ?", (duel_id,))
        return duel_from_row(row) if row else None

    async def get_duel_by_shortcode(self, shortcode: str, tx: _Executor | None = None) -> Duel | None:
        row = await self._q(tx).fetchone(
            f"SELECT {_DUEL_COLUMNS} FROM duels WHERE shortcode = ?", (shortcode.strip().upper(),)
        )
        return duel_from_row(row) if row else None

    async def shortcode_exists(self, shortcode: str, tx: _Executor | None = None) -> bool:
        row = await self._q(tx).fetchone("SELECT 1 FROM duels WHERE shortcode = ?", (shortcode,))
        return row is not None

    async def insert_duel(self, duel: Duel, tx: _Executor | None = None) -> None:
        q = self._q(tx)
        await q.execute(
            f"INSERT INTO duels ({_DUEL_COLUMNS}) VALUES ({_DUEL_PLACEHOLDERS})",
            (duel.id, *_duel_params(duel), duel.created_at),
        )
        await self._sync_players(duel, q)

    async def save_duel(self, duel: Duel, tx: _Executor | None = None) -> None:
        q = self._q(tx)
        count = await q.execute(
            "UPDATE duels SET status = ?, round_limit = ?, wizards_json = ?, players_json = ?, "
            "current_round = ?, points_json = ?, hit_points_json = ?, pending_actors_json = ?, "
            "winners_json = ?, losers_json = ?, shortcode = ?, featured_illustration = ?, "
            "is_campaign = ?, text_only_mode = ?, text_only_reason = ?, image_credit_consumed = ?, "
            "image_credit_consumed_by = ? WHERE id = ?",
            (*_duel_params(duel), duel.id),
        )
        if count == 0:
            raise LookupError(f"Duel {duel.id} does not exist")
        await self._sync_players(duel, q)

    async def _sync_players(self, duel: Duel, q: _Executor) -> None:
        for player in duel.players:
            await q.execute(
                "INSERT OR IGNORE INTO duel_players (duel_id, player_id) VALUES (?, ?)",
                (duel.id, player),
            )

    async def list_player_duels(self, player_id: str) -> list[Duel]:
        rows = await self.db.fetchall(
            f"SELECT {', '.join('d.' + c.strip() for c in _DUEL_COLUMNS.split(','))} "
            "FROM duels d JOIN duel_players p ON p.duel_id = d.id "
            "WHERE p.player_id = ? ORDER BY d.created_at DESC",
            (player_id,),
        )
        return [duel_from_row(r) for r in rows]

    async def list_wizard_duels(self, wizard_id: str) -> list[Duel]:
        rows = await self.db.fetchall(
            f"SELECT {_DUEL_COLUMNS} FROM duels "
            "WHERE EXISTS (SELECT 1 FROM json_each(duels.wizards_json) WHERE json_each.value = ?) "
            "ORDER BY created_at DESC",
            (wizard_id,),
        )
        return [duel_from_row(r) for r in rows]

    async def list_duels_with_status(self, status: DuelStatus) -> list[Duel]:
        rows = await self.db.fetchall(
            f"SELECT {_DUEL_COLUMNS} FROM duels WHERE status = ? ORDER BY created_at DESC",
            (status.value,),
        )
        return [duel_from_row(r) for r in rows]

    # ---------------------- Rounds ----------------------
    async def get_round(self, round_id: str, tx: _Executor | None = None) -> Round | None:
        row = await self._q(tx).fetchone(f"SELECT {_ROUND_COLUMNS} FROM rounds WHERE id = ?", (round_id,))
        return round_from_row(row) if row else None

    async def get_round_by_number(
        self, duel_id: str, round_number: int, tx: _Executor | None = None
    ) -> Round | None:
        row = await self._q(tx).fetchone(
            f"SELECT {_ROUND_COLUMNS} FROM rounds WHERE duel_id = ? AND round_number = ?",
            (duel_id, round_number),
        )
        return round_from_row(row) if row else None

    async def list_rounds(self, duel_id: str, tx: _Executor | None = None) -> list[Round]:
        """Return every round of a duel, oldest first."""
        rows = await self._q(tx).fetchall(
            f"SELECT {_ROUND_COLUMNS} FROM rounds WHERE duel_id = ? ORDER BY round_number ASC",
            (duel_id,),
        )
        return [round_from_row(r) for r in rows]

    async def max_round_number(self, duel_id: str, tx: _Executor | None = None) -> int | None:
        row = await self._q(tx).fetchone("SELECT MAX(round_number) FROM rounds WHERE duel_id = ?", (duel_id,))
        return int(row[0]) if row and row[0] is not None else None

    async def insert_round(self, rnd: Round, tx: _Executor | None = None) -> None:
        await self._q(tx).execute(
            f"INSERT INTO rounds ({_ROUND_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (rnd.id, rnd.duel_id, rnd.round_number, *_round_params(rnd)),
        )

    async def save_round(self, rnd: Round, tx: _Executor | None = None) -> None:
        rnd.updated_at = time.time()
        count = await self._q(tx).execute(
            "UPDATE rounds SET kind = ?, status = ?, spells_json = ?, outcome_json = ?, updated_at = ? WHERE id = ?",
            (*_round_params(rnd), rnd.id),
        )
        if count == 0:
            raise LookupError(f"Round {rnd.id} does not exist")

    async def list_rounds_with_status(self, status: RoundStatus, updated_before: float | None = None) -> list[Round]:
        if updated_before is None:
            rows = await self.db.fetchall(
                f"SELECT {_ROUND_COLUMNS} FROM rounds WHERE status = ? ORDER BY updated_at ASC",
                (status.value,),
            )
        else:
            rows = await self.db.fetchall(
                f"SELECT {_ROUND_COLUMNS} FROM rounds WHERE status = ? AND updated_at < ? ORDER BY updated_at ASC",
                (status.value, updated_before),
            )
        return [round_from_row(r) for r in rows]
