from __future__ import annotations

import logging
import uuid
from typing import Sequence

import aiosqlite

from ..models.duel import NotFound
from ..models.wizard import Wizard
from .db import Database


log = logging.getLogger(__name__)


_WIZARD_COLUMNS = "id, owner, name, description, illustration, wins, losses, created_at"


def _wizard_from_row(row: aiosqlite.Row) -> Wizard:
    return Wizard(
        id=row["id"],
        owner=row["owner"],
        name=row["name"],
        description=row["description"] or "",
        illustration=row["illustration"],
        wins=int(row["wins"]),
        losses=int(row["losses"]),
        created_at=float(row["created_at"]),
    )


class WizardService:
    """Wizard records and their win/loss counters."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def create_wizard(self, owner: str, name: str, description: str = "") -> Wizard:
        name = name.strip()
        if not name:
            raise ValueError("Wizard name cannot be empty")
        wizard = Wizard(id=uuid.uuid4().hex, owner=owner, name=name, description=description.strip())
        await self.db.execute(
            f"INSERT INTO wizards ({_WIZARD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                wizard.id,
                wizard.owner,
                wizard.name,
                wizard.description,
                wizard.illustration,
                wizard.wins,
                wizard.losses,
                wizard.created_at,
            ),
        )
        log.info("Created wizard %s (%s) for %s", wizard.name, wizard.id, owner)
        return wizard

    async def get_wizard(self, wizard_id: str) -> Wizard | None:
        row = await self.db.fetchone(f"SELECT {_WIZARD_COLUMNS} FROM wizards WHERE id = ?", (wizard_id,))
        return _wizard_from_row(row) if row else None

    async def get_wizards(self, wizard_ids: Sequence[str]) -> list[Wizard]:
        """Return the known wizards among ``wizard_ids``, in the order given."""
        ids = list(dict.fromkeys(wizard_ids))
        if not ids:
            return []
        placeholders = ", ".join(["?"] * len(ids))
        rows = await self.db.fetchall(
            f"SELECT {_WIZARD_COLUMNS} FROM wizards WHERE id IN ({placeholders})", tuple(ids)
        )
        by_id = {r["id"]: _wizard_from_row(r) for r in rows}
        return [by_id[i] for i in ids if i in by_id]

    async def list_user_wizards(self, owner: str) -> list[Wizard]:
        rows = await self.db.fetchall(
            f"SELECT {_WIZARD_COLUMNS} FROM wizards WHERE owner = ? ORDER BY created_at ASC", (owner,)
        )
        return [_wizard_from_row(r) for r in rows]

    async def record_wizard_result(self, wizard_id: str, won: bool, is_campaign: bool = False) -> bool:
        """Bump the win or loss counter. Returns False when nothing was recorded."""
        if is_campaign:
            log.debug("Campaign result for wizard %s not recorded", wizard_id)
            return False
        column = "wins" if won else "losses"
        count = await self.db.execute(f"UPDATE wizards SET {column} = {column} + 1 WHERE id = ?", (wizard_id,))
        if count == 0:
            log.warning("Cannot record result for unknown wizard %s", wizard_id)
            return False
        return True

    async def set_illustration(self, wizard_id: str, image_ref: str | None) -> None:
        count = await self.db.execute("UPDATE wizards SET illustration = ? WHERE id = ?", (image_ref, wizard_id))
        if count == 0:
            raise NotFound(f"Wizard {wizard_id} not found")
