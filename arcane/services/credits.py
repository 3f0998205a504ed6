from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from .db import Database, Transaction


log = logging.getLogger(__name__)


PREMIUM_TIERS = frozenset({"PREMIUM"})
ACTIVE_STATUSES = frozenset({"ACTIVE", "TRIALING"})

INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass
class CreditConsumption:
    success: bool
    already_consumed: bool = False
    reason: str | None = None
    remaining: int | None = None


class CreditLedger:
    """Per-user image credits.

    One debit covers every image of a duel: the first successful consumption
    writes a ``duel_image_credits`` row in the same transaction as the debit,
    and later calls for that duel only see the row.
    """

    def __init__(self, db: Database, premium_tiers: frozenset[str] = PREMIUM_TIERS) -> None:
        self.db = db
        self.premium_tiers = premium_tiers

    async def _ensure_user(self, q: Database | Transaction, user_id: str) -> None:
        await q.execute("INSERT OR IGNORE INTO users (user_id) VALUES (?)", (user_id,))

    async def _log_tx(
        self,
        q: Database | Transaction,
        user_id: str,
        kind: str,
        amount: int,
        source: str,
        metadata: dict[str, Any] | None,
    ) -> None:
        await q.execute(
            "INSERT INTO image_credit_transactions (user_id, type, amount, source, metadata_json) VALUES (?, ?, ?, ?, ?)",
            (user_id, kind, amount, source, json.dumps(metadata) if metadata else None),
        )

    async def get_credits(self, user_id: str) -> int:
        row = await self.db.fetchone("SELECT image_credits FROM users WHERE user_id = ?", (user_id,))
        return int(row["image_credits"]) if row else 0

    async def set_subscription(self, user_id: str, tier: str, status: str = "ACTIVE") -> None:
        async with self.db.transaction() as tx:
            await self._ensure_user(tx, user_id)
            await tx.execute(
                "UPDATE users SET subscription_tier = ?, subscription_status = ?, updated_at = CURRENT_TIMESTAMP "
                "WHERE user_id = ?",
                (tier.upper(), status.upper(), user_id),
            )

    async def is_premium(self, user_id: str) -> bool:
        row = await self.db.fetchone(
            "SELECT subscription_tier, subscription_status FROM users WHERE user_id = ?", (user_id,)
        )
        return self._row_is_premium(row)

    def _row_is_premium(self, row) -> bool:
        if row is None:
            return False
        return row["subscription_tier"] in self.premium_tiers and row["subscription_status"] in ACTIVE_STATUSES

    async def grant_credits(
        self, user_id: str, amount: int, source: str = "grant", metadata: dict[str, Any] | None = None
    ) -> int:
        if amount <= 0:
            raise ValueError("Credit grants must be positive")
        async with self.db.transaction() as tx:
            await self._ensure_user(tx, user_id)
            await tx.execute(
                "UPDATE users SET image_credits = image_credits + ?, updated_at = CURRENT_TIMESTAMP WHERE user_id = ?",
                (amount, user_id),
            )
            await self._log_tx(tx, user_id, "EARNED", amount, source, metadata)
            row = await tx.fetchone("SELECT image_credits FROM users WHERE user_id = ?", (user_id,))
        balance = int(row["image_credits"]) if row else amount
        log.info("Granted %d image credits to %s (%s); balance %d", amount, user_id, source, balance)
        return balance

    async def has_image_credits_for_duel(self, user_id: str, duel_id: str) -> bool:
        if await self.db.fetchone("SELECT 1 FROM duel_image_credits WHERE duel_id = ?", (duel_id,)):
            return True
        row = await self.db.fetchone(
            "SELECT image_credits, subscription_tier, subscription_status FROM users WHERE user_id = ?", (user_id,)
        )
        if row is None:
            return False
        return self._row_is_premium(row) or int(row["image_credits"]) > 0

    async def consume_image_credit_for_duel(
        self, user_id: str, duel_id: str, metadata: dict[str, Any] | None = None
    ) -> CreditConsumption:
        async with self.db.transaction() as tx:
            marker = await tx.fetchone("SELECT user_id FROM duel_image_credits WHERE duel_id = ?", (duel_id,))
            if marker is not None:
                return CreditConsumption(success=True, already_consumed=True)

            row = await tx.fetchone(
                "SELECT image_credits, subscription_tier, subscription_status FROM users WHERE user_id = ?",
                (user_id,),
            )
            premium = self._row_is_premium(row)
            balance = int(row["image_credits"]) if row else 0
            if not premium and balance < 1:
                log.info("User %s has no image credits for duel %s", user_id, duel_id)
                return CreditConsumption(success=False, reason=INSUFFICIENT_CREDITS, remaining=balance)

            cost = 0 if premium else 1
            await tx.execute(
                "UPDATE users SET image_credits = image_credits - ?, image_generations = image_generations + 1, "
                "updated_at = CURRENT_TIMESTAMP WHERE user_id = ?",
                (cost, user_id),
            )
            await tx.execute("INSERT INTO duel_image_credits (duel_id, user_id) VALUES (?, ?)", (duel_id, user_id))
            await tx.execute(
                "UPDATE duels SET image_credit_consumed = 1, image_credit_consumed_by = ? WHERE id = ?",
                (user_id, duel_id),
            )
            await self._log_tx(
                tx,
                user_id,
                "CONSUMED",
                -cost,
                "premium_duel_image" if premium else "duel_image",
                {"duel_id": duel_id, **(metadata or {})},
            )

        log.info("Image credit for duel %s consumed by %s (cost %d)", duel_id, user_id, cost)
        return CreditConsumption(success=True, remaining=balance - cost)
