from __future__ import annotations

import logging
import uuid
from typing import Protocol

from ..models.duel import (
    DuelStatus,
    FixedRounds,
    InvalidState,
    NotFound,
    Round,
    RoundKind,
    RoundOutcome,
    RoundStatus,
)
from ..models.end_conditions import evaluate_end_conditions
from .duel_store import DuelStore


log = logging.getLogger(__name__)


class WizardStats(Protocol):
    async def record_wizard_result(self, wizard_id: str, won: bool, is_campaign: bool = False) -> bool: ...


class RoundFinalizer:
    """Applies narrated outcomes to duel state and decides whether the duel goes on."""

    def __init__(self, store: DuelStore, wizard_stats: WizardStats | None = None) -> None:
        self.store = store
        self.wizard_stats = wizard_stats

    async def apply_outcome(self, round_id: str, outcome: RoundOutcome) -> str:
        """Complete ``round_id`` with ``outcome``.

        Safe to call again for the same round: a round that is already
        COMPLETED is left untouched, so points and health are applied once.
        """
        results: dict[str, bool] = {}
        is_campaign = False

        async with self.store.transaction() as tx:
            rnd = await self.store.get_round(round_id, tx)
            if rnd is None:
                raise NotFound(f"Round {round_id} not found")
            if rnd.status == RoundStatus.COMPLETED:
                log.info("Round %s already completed; ignoring repeated outcome", round_id)
                return round_id
            if rnd.status == RoundStatus.WAITING_FOR_SPELLS:
                raise InvalidState(f"Round {rnd.round_number} is still waiting for spells")

            duel = await self.store.get_duel(rnd.duel_id, tx)
            if duel is None:
                raise NotFound(f"Duel {rnd.duel_id} not found")

            rnd.outcome = outcome
            rnd.status = RoundStatus.COMPLETED
            await self.store.save_round(rnd, tx)

            if duel.status != DuelStatus.IN_PROGRESS:
                # Cancelled while the narrator was working; keep the story, skip the scoring
                log.info("Duel %s is %s; outcome stored without scoring", duel.id, duel.status.value)
                return round_id

            duel.apply_outcome(outcome)
            result = evaluate_end_conditions(
                duel.wizards, duel.points, duel.hit_points, duel.round_limit, duel.current_round
            )

            if result.should_end:
                duel.status = DuelStatus.COMPLETED
                duel.winners = set(result.winners)
                duel.losers = set(result.losers)
                duel.pending_actors = set()
                is_campaign = duel.is_campaign
                results = {w: True for w in duel.winners}
                results.update({w: False for w in duel.losers})
                log.info(
                    "Duel %s completed after round %d: winners=%s losers=%s",
                    duel.id,
                    duel.current_round,
                    sorted(duel.winners),
                    sorted(duel.losers),
                )
            else:
                next_number = duel.current_round + 1
                kind = RoundKind.SPELL_CASTING
                if isinstance(duel.round_limit, FixedRounds) and next_number == duel.round_limit.rounds:
                    kind = RoundKind.FINAL_ROUND
                await self.store.insert_round(
                    Round(id=uuid.uuid4().hex, duel_id=duel.id, round_number=next_number, kind=kind), tx
                )
                duel.current_round = next_number
                duel.reset_pending_actors()
                log.info("Duel %s continues with round %d", duel.id, next_number)

            await self.store.save_duel(duel, tx)

        if results and not is_campaign:
            await self._record_results(results)
        return round_id

    async def _record_results(self, results: dict[str, bool]) -> None:
        if self.wizard_stats is None:
            return
        for wizard_id, won in results.items():
            try:
                await self.wizard_stats.record_wizard_result(wizard_id, won)
            except Exception as e:
                log.error("Failed to record result for wizard %s: %s", wizard_id, e, exc_info=True)

    async def create_conclusion_round(self, duel_id: str, outcome: RoundOutcome) -> str:
        """Append the epilogue round to a completed duel. Returns the existing one if present."""
        async with self.store.transaction() as tx:
            duel = await self.store.get_duel(duel_id, tx)
            if duel is None:
                raise NotFound(f"Duel {duel_id} not found")
            if duel.status != DuelStatus.COMPLETED:
                raise InvalidState("Only completed duels get a conclusion")
            for existing in await self.store.list_rounds(duel_id, tx):
                if existing.kind == RoundKind.CONCLUSION:
                    return existing.id
            last = await self.store.max_round_number(duel_id, tx)
            rnd = Round(
                id=uuid.uuid4().hex,
                duel_id=duel_id,
                round_number=(last if last is not None else 0) + 1,
                kind=RoundKind.CONCLUSION,
                status=RoundStatus.COMPLETED,
                outcome=outcome,
            )
            await self.store.insert_round(rnd, tx)
        log.info("Added conclusion round %d to duel %s", rnd.round_number, duel_id)
        return rnd.id
