from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from ..models.duel import (
    MIN_WIZARDS,
    SHORTCODE_ALPHABET,
    SHORTCODE_LENGTH,
    AlreadyTerminal,
    Duel,
    DuelStatus,
    DuplicatePlayer,
    InvalidState,
    NotFound,
    Round,
    RoundKind,
    RoundLimit,
    RoundOutcome,
    RoundStatus,
)
from .duel_store import DuelStore
from .scheduler import INTRODUCE_DUEL, JobScheduler

if TYPE_CHECKING:
    from .wizards import WizardService


log = logging.getLogger(__name__)


def generate_shortcode(rng: random.Random | None = None) -> str:
    r = rng or random
    return "".join(r.choice(SHORTCODE_ALPHABET) for _ in range(SHORTCODE_LENGTH))


@dataclass
class PlayerDuelStats:
    total_duels: int = 0
    wins: int = 0
    losses: int = 0
    in_progress: int = 0
    cancelled: int = 0


class DuelService:
    """Duel lifecycle: create, join, start, cancel, and the introduction hand-off."""

    def __init__(
        self,
        store: DuelStore,
        scheduler: JobScheduler,
        wizards: "WizardService | None" = None,
        auto_start_players: int | None = 2,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.wizards = wizards
        # Schedule the introduction automatically once this many players have joined
        self.auto_start_players = auto_start_players
        self._rng = rng or random.SystemRandom()

    # ---------------------- Lifecycle ----------------------
    async def create_duel(
        self,
        round_limit: RoundLimit,
        wizards: Sequence[str],
        players: Sequence[str],
        is_campaign: bool = False,
    ) -> str:
        if len(set(wizards)) != len(wizards):
            raise ValueError("A wizard can only appear once in a duel")
        duel_id = uuid.uuid4().hex
        async with self.store.transaction() as tx:
            shortcode = await self._unique_shortcode(tx)
            duel = Duel(
                id=duel_id,
                round_limit=round_limit,
                wizards=[],
                players=list(players),
                shortcode=shortcode,
                is_campaign=is_campaign,
            )
            duel.add_wizards(list(wizards))
            await self.store.insert_duel(duel, tx)
        log.info("Created duel %s (%s, %s) with %d wizards", duel_id, shortcode, round_limit.describe(), len(wizards))
        return duel_id

    async def _unique_shortcode(self, tx) -> str:
        while True:
            code = generate_shortcode(self._rng)
            if not await self.store.shortcode_exists(code, tx):
                return code
            log.debug("Shortcode collision on %s, drawing again", code)

    async def join_duel(self, duel_id: str, player: str, wizards: Sequence[str]) -> str:
        if not wizards:
            raise InvalidState("Join with at least one wizard")
        async with self.store.transaction() as tx:
            duel = await self.store.get_duel(duel_id, tx)
            if duel is None:
                raise NotFound(f"Duel {duel_id} not found")
            if duel.status != DuelStatus.WAITING_FOR_PLAYERS:
                raise InvalidState("Duel is not accepting new players")
            if player in duel.players:
                raise DuplicatePlayer(f"Player {player} is already in this duel")
            duel.players.append(player)
            try:
                duel.add_wizards(list(wizards))
            except ValueError as e:
                raise InvalidState(str(e)) from e
            await self.store.save_duel(duel, tx)
            player_count = len(duel.players)
            wizard_count = len(duel.wizards)
        log.info("Player %s joined duel %s with %d wizard(s)", player, duel_id, len(wizards))

        if self.auto_start_players and player_count >= self.auto_start_players and wizard_count >= MIN_WIZARDS:
            await self.scheduler.enqueue(INTRODUCE_DUEL, duel_id=duel_id)
        return duel_id

    async def start_duel(self, duel_id: str) -> str:
        """Request the introduction; the duel moves to IN_PROGRESS when it has been narrated."""
        duel = await self.store.get_duel(duel_id)
        if duel is None:
            raise NotFound(f"Duel {duel_id} not found")
        if duel.status != DuelStatus.WAITING_FOR_PLAYERS:
            raise InvalidState("Duel cannot be started")
        if len(duel.wizards) < MIN_WIZARDS:
            raise InvalidState("A duel needs at least two wizards")
        await self.scheduler.enqueue(INTRODUCE_DUEL, duel_id=duel_id)
        return duel_id

    async def create_introduction_round(self, duel_id: str, outcome: RoundOutcome) -> str:
        """Store round 0 as already completed. Re-delivery returns the existing round."""
        async with self.store.transaction() as tx:
            if await self.store.get_duel(duel_id, tx) is None:
                raise NotFound(f"Duel {duel_id} not found")
            existing = await self.store.get_round_by_number(duel_id, 0, tx)
            if existing is not None:
                return existing.id
            rnd = Round(
                id=uuid.uuid4().hex,
                duel_id=duel_id,
                round_number=0,
                kind=RoundKind.SPELL_CASTING,
                status=RoundStatus.COMPLETED,
                outcome=outcome,
            )
            await self.store.insert_round(rnd, tx)
        return rnd.id

    async def open_first_round(self, duel_id: str) -> str | None:
        """Create round 1 and flip the duel to IN_PROGRESS.

        Returns the new round id, or None if the duel had already left
        WAITING_FOR_PLAYERS (cancelled meanwhile, or a repeated delivery).
        """
        async with self.store.transaction() as tx:
            duel = await self.store.get_duel(duel_id, tx)
            if duel is None:
                raise NotFound(f"Duel {duel_id} not found")
            if duel.status != DuelStatus.WAITING_FOR_PLAYERS:
                log.info("Duel %s is %s; not opening round 1", duel_id, duel.status.value)
                return None
            rnd = Round(id=uuid.uuid4().hex, duel_id=duel_id, round_number=1)
            await self.store.insert_round(rnd, tx)
            duel.status = DuelStatus.IN_PROGRESS
            duel.current_round = 1
            duel.reset_pending_actors()
            await self.store.save_duel(duel, tx)
        log.info("Duel %s is in progress", duel_id)
        return rnd.id

    async def cancel_duel(self, duel_id: str) -> str:
        async with self.store.transaction() as tx:
            duel = await self.store.get_duel(duel_id, tx)
            if duel is None:
                raise NotFound(f"Duel {duel_id} not found")
            if duel.status == DuelStatus.COMPLETED:
                raise AlreadyTerminal("Cannot cancel a completed duel")
            duel.status = DuelStatus.CANCELLED
            await self.store.save_duel(duel, tx)
        log.info("Duel %s cancelled", duel_id)
        return duel_id

    async def update_featured_illustration(self, duel_id: str, image_ref: str) -> str:
        async with self.store.transaction() as tx:
            duel = await self.store.get_duel(duel_id, tx)
            if duel is None:
                raise NotFound(f"Duel {duel_id} not found")
            duel.featured_illustration = image_ref
            await self.store.save_duel(duel, tx)
        return duel_id

    async def set_text_only_mode(self, duel_id: str, reason: str) -> None:
        async with self.store.transaction() as tx:
            duel = await self.store.get_duel(duel_id, tx)
            if duel is None:
                raise NotFound(f"Duel {duel_id} not found")
            if duel.text_only_mode and duel.text_only_reason == reason:
                return
            duel.text_only_mode = True
            duel.text_only_reason = reason
            await self.store.save_duel(duel, tx)

    # ---------------------- Queries ----------------------
    async def get_duel(self, duel_id: str) -> Duel:
        duel = await self.store.get_duel(duel_id)
        if duel is None:
            raise NotFound(f"Duel {duel_id} not found")
        return duel

    async def get_duel_by_shortcode(self, shortcode: str) -> Duel | None:
        return await self.store.get_duel_by_shortcode(shortcode)

    async def get_rounds(self, duel_id: str) -> list[Round]:
        return await self.store.list_rounds(duel_id)

    async def get_player_duels(self, player_id: str) -> list[Duel]:
        return await self.store.list_player_duels(player_id)

    async def get_wizard_duels(self, wizard_id: str) -> list[Duel]:
        return await self.store.list_wizard_duels(wizard_id)

    async def get_player_duel_stats(self, player_id: str) -> PlayerDuelStats:
        """Win/loss tally for a player, counting a win when one of their own wizards won."""
        stats = PlayerDuelStats()
        for duel in await self.store.list_player_duels(player_id):
            stats.total_duels += 1
            if duel.status == DuelStatus.COMPLETED:
                own = await self._owned_wizards(player_id, duel.wizards)
                if own & (duel.winners or set()):
                    stats.wins += 1
                else:
                    stats.losses += 1
            elif duel.status == DuelStatus.CANCELLED:
                stats.cancelled += 1
            else:
                stats.in_progress += 1
        return stats

    async def _owned_wizards(self, player_id: str, wizard_ids: Sequence[str]) -> set[str]:
        if self.wizards is None:
            return set()
        return {w.id for w in await self.wizards.get_wizards(wizard_ids) if w.owner == player_id}
