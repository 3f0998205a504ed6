from __future__ import annotations

import logging

from ..models.duel import MIN_WIZARDS, Duel, DuelStatus, NotFound, RoundKind, RoundStatus
from ..models.wizard import Wizard
from .duel_store import DuelStore
from .duels import DuelService
from .finalizer import RoundFinalizer
from .illustrations import IllustrationPipeline, ImageBackend
from .narrator import NarrationContext, Narrator
from .scheduler import (
    CONCLUDE_DUEL,
    GENERATE_ILLUSTRATION,
    INTRODUCE_DUEL,
    NARRATE_ROUND,
    JobScheduler,
)
from .wizards import WizardService


log = logging.getLogger(__name__)


class DuelJobs:
    """Deferred handlers for narration and illustration.

    Every handler may run more than once for the same payload and checks the
    stored state before doing any work.
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        store: DuelStore,
        duels: DuelService,
        finalizer: RoundFinalizer,
        narrator: Narrator,
        wizards: WizardService,
        pipeline: IllustrationPipeline | None = None,
        image_backend: ImageBackend = ImageBackend.PROMPT_ONLY,
    ) -> None:
        self.scheduler = scheduler
        self.store = store
        self.duels = duels
        self.finalizer = finalizer
        self.narrator = narrator
        self.wizards = wizards
        self.pipeline = pipeline
        self.image_backend = image_backend

    def register(self) -> None:
        self.scheduler.register(INTRODUCE_DUEL, self.introduce_duel)
        self.scheduler.register(NARRATE_ROUND, self.narrate_round)
        self.scheduler.register(GENERATE_ILLUSTRATION, self.generate_illustration)
        self.scheduler.register(CONCLUDE_DUEL, self.conclude_duel)

    async def _wizards_for(self, duel: Duel) -> list[Wizard]:
        known = {w.id: w for w in await self.wizards.get_wizards(duel.wizards)}
        # Wizards kept elsewhere still need a name in the prompt
        return [known.get(wid) or Wizard(id=wid, owner="", name=wid) for wid in duel.wizards]

    async def _completed_rounds(self, duel_id: str, before: int | None = None):
        return [
            r
            for r in await self.store.list_rounds(duel_id)
            if r.status == RoundStatus.COMPLETED and (before is None or r.round_number < before)
        ]

    async def _schedule_illustration(self, duel_id: str, round_number: int, prompt: str | None) -> None:
        if self.pipeline is None or not prompt:
            return
        await self.scheduler.enqueue(GENERATE_ILLUSTRATION, duel_id=duel_id, round_number=round_number, prompt=prompt)

    async def _schedule_conclusion(self, duel_id: str) -> bool:
        duel = await self.duels.get_duel(duel_id)
        if duel.status != DuelStatus.COMPLETED:
            return False
        rounds = await self.store.list_rounds(duel_id)
        if any(r.kind == RoundKind.CONCLUSION for r in rounds):
            return False
        await self.scheduler.enqueue(CONCLUDE_DUEL, duel_id=duel_id)
        return True

    async def requeue_unfinished(self) -> int:
        """Enqueue the work a previous process accepted but never finished.

        Jobs only live in memory. On startup this picks up rounds left in
        PROCESSING, introductions that stored round 0 without opening round 1,
        and completed duels still missing their conclusion. Returns the number
        of jobs enqueued.
        """
        count = 0
        for rnd in await self.store.list_rounds_with_status(RoundStatus.PROCESSING):
            await self.scheduler.enqueue(NARRATE_ROUND, duel_id=rnd.duel_id, round_id=rnd.id)
            count += 1
        for duel in await self.store.list_duels_with_status(DuelStatus.WAITING_FOR_PLAYERS):
            if await self.store.get_round_by_number(duel.id, 0) is not None:
                await self.scheduler.enqueue(INTRODUCE_DUEL, duel_id=duel.id)
                count += 1
        for duel in await self.store.list_duels_with_status(DuelStatus.COMPLETED):
            if await self._schedule_conclusion(duel.id):
                count += 1
        if count:
            log.warning("Re-enqueued %d unfinished job(s) from a previous run", count)
        return count

    # ---------------------- Handlers ----------------------
    async def introduce_duel(self, duel_id: str) -> None:
        duel = await self.duels.get_duel(duel_id)
        if duel.status != DuelStatus.WAITING_FOR_PLAYERS:
            log.info("Duel %s is %s; skipping introduction", duel_id, duel.status.value)
            return
        if len(duel.wizards) < MIN_WIZARDS:
            log.warning("Duel %s has %d wizard(s); not introducing it", duel_id, len(duel.wizards))
            return

        existing = await self.store.get_round_by_number(duel_id, 0)
        if existing is None:
            ctx = NarrationContext(duel=duel, wizards=await self._wizards_for(duel))
            outcome = await self.narrator.introduce(ctx)
            await self.duels.create_introduction_round(duel_id, outcome)
            await self._schedule_illustration(duel_id, 0, outcome.illustration_prompt)
        await self.duels.open_first_round(duel_id)

    async def narrate_round(self, duel_id: str, round_id: str) -> None:
        rnd = await self.store.get_round(round_id)
        if rnd is None:
            raise NotFound(f"Round {round_id} not found")
        if rnd.status == RoundStatus.COMPLETED:
            log.info("Round %s already completed; nothing to narrate", round_id)
            await self._schedule_conclusion(duel_id)
            return
        if rnd.status != RoundStatus.PROCESSING:
            log.info("Round %s is %s; nothing to narrate", round_id, rnd.status.value)
            return

        duel = await self.duels.get_duel(duel_id)
        ctx = NarrationContext(
            duel=duel,
            wizards=await self._wizards_for(duel),
            previous_rounds=await self._completed_rounds(duel_id, before=rnd.round_number),
            round=rnd,
        )
        outcome = await self.narrator.narrate_round(ctx)
        await self.finalizer.apply_outcome(round_id, outcome)

        await self._schedule_illustration(duel_id, rnd.round_number, outcome.illustration_prompt)
        await self._schedule_conclusion(duel_id)

    async def generate_illustration(self, duel_id: str, round_number: int, prompt: str) -> None:
        if self.pipeline is None:
            return
        duel = await self.duels.get_duel(duel_id)
        result = await self.pipeline.generate_round_illustration(
            prompt,
            duel_id,
            round_number,
            self.image_backend,
            user_id=duel.players[0] if duel.players else None,
            skip_image_generation=duel.text_only_mode,
        )
        if result.text_only_mode:
            log.info("Duel %s round %d stays text only (%s)", duel_id, round_number, result.reason or "text only duel")

    async def conclude_duel(self, duel_id: str) -> None:
        duel = await self.duels.get_duel(duel_id)
        if duel.status != DuelStatus.COMPLETED:
            log.info("Duel %s is %s; no conclusion yet", duel_id, duel.status.value)
            return
        rounds = await self.store.list_rounds(duel_id)
        if any(r.kind == RoundKind.CONCLUSION for r in rounds):
            return

        ctx = NarrationContext(
            duel=duel,
            wizards=await self._wizards_for(duel),
            previous_rounds=[r for r in rounds if r.status == RoundStatus.COMPLETED],
        )
        outcome = await self.narrator.conclude(ctx)
        round_id = await self.finalizer.create_conclusion_round(duel_id, outcome)
        rnd = await self.store.get_round(round_id)
        if rnd is not None:
            await self._schedule_illustration(duel_id, rnd.round_number, outcome.illustration_prompt)
