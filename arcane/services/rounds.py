from __future__ import annotations

import logging
import time

from ..models.duel import (
    DuelStatus,
    InvalidState,
    NotFound,
    Round,
    RoundStatus,
    Spell,
)
from .duel_store import DuelStore
from .scheduler import NARRATE_ROUND, JobScheduler


log = logging.getLogger(__name__)


class RoundCoordinator:
    """Collects spells for the current round and hands full rounds to the narrator.

    The pending-actor removal, the emptiness check and the PROCESSING flip all
    happen in one store transaction. Only the caller whose transaction made the
    flip schedules narration, so concurrent last submissions narrate once.
    """

    def __init__(self, store: DuelStore, scheduler: JobScheduler) -> None:
        self.store = store
        self.scheduler = scheduler

    async def submit_action(self, duel_id: str, wizard_id: str, text: str) -> str:
        text = (text or "").strip()
        if not text:
            raise ValueError("Spell text cannot be empty")

        async with self.store.transaction() as tx:
            duel = await self.store.get_duel(duel_id, tx)
            if duel is None:
                raise NotFound(f"Duel {duel_id} not found")
            if duel.status != DuelStatus.IN_PROGRESS:
                raise InvalidState(f"Duel is {duel.status.value}, not accepting spells")
            if wizard_id not in duel.wizards:
                raise NotFound(f"Wizard {wizard_id} is not part of duel {duel_id}")

            rnd = await self.store.get_round_by_number(duel_id, duel.current_round, tx)
            if rnd is None:
                raise NotFound(f"Round {duel.current_round} of duel {duel_id} not found")
            if rnd.status != RoundStatus.WAITING_FOR_SPELLS:
                raise InvalidState(f"Round {rnd.round_number} is {rnd.status.value}")

            rnd.spells[wizard_id] = Spell(text=text)
            duel.pending_actors.discard(wizard_id)
            flipped = not duel.pending_actors
            if flipped:
                rnd.status = RoundStatus.PROCESSING

            await self.store.save_round(rnd, tx)
            await self.store.save_duel(duel, tx)

        log.info("Wizard %s cast in duel %s round %d", wizard_id, duel_id, rnd.round_number)
        if flipped:
            log.info("All spells in for duel %s round %d; scheduling narration", duel_id, rnd.round_number)
            await self.scheduler.enqueue(NARRATE_ROUND, duel_id=duel_id, round_id=rnd.id)
        return rnd.id

    async def trigger_round_processing(self, duel_id: str, round_id: str) -> str:
        """Re-schedule narration for a round whose narrator job was lost.

        Works on a round that is already PROCESSING, or on a waiting round whose
        spells are all in. A completed round is rejected.
        """
        async with self.store.transaction() as tx:
            duel = await self.store.get_duel(duel_id, tx)
            if duel is None:
                raise NotFound(f"Duel {duel_id} not found")
            rnd = await self.store.get_round(round_id, tx)
            if rnd is None or rnd.duel_id != duel_id:
                raise NotFound(f"Round {round_id} not found in duel {duel_id}")
            if duel.status != DuelStatus.IN_PROGRESS:
                raise InvalidState(f"Duel is {duel.status.value}")
            if rnd.status == RoundStatus.COMPLETED:
                raise InvalidState(f"Round {rnd.round_number} is already completed")
            if rnd.status == RoundStatus.WAITING_FOR_SPELLS and duel.pending_actors:
                raise InvalidState(f"Round {rnd.round_number} is still waiting for spells")
            rnd.status = RoundStatus.PROCESSING
            await self.store.save_round(rnd, tx)

        log.warning("Re-triggering narration for duel %s round %d", duel_id, rnd.round_number)
        await self.scheduler.enqueue(NARRATE_ROUND, duel_id=duel_id, round_id=round_id)
        return round_id

    async def find_stale_rounds(self, older_than: float) -> list[Round]:
        """Rounds stuck in PROCESSING for more than ``older_than`` seconds."""
        return await self.store.list_rounds_with_status(RoundStatus.PROCESSING, time.time() - older_than)

    async def update_round_illustration(self, round_id: str, image_ref: str) -> str:
        async with self.store.transaction() as tx:
            rnd = await self.store.get_round(round_id, tx)
            if rnd is None:
                raise NotFound(f"Round {round_id} not found")
            if rnd.outcome is None:
                raise InvalidState(f"Round {round_id} has no outcome to illustrate")
            rnd.outcome = rnd.outcome.model_copy(update={"illustration_ref": image_ref})
            await self.store.save_round(rnd, tx)
        return round_id
