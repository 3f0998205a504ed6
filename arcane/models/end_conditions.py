"""Win/loss/tie determination for a duel after a round has been applied."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

from .duel import (
    STARTING_HIT_POINTS,
    STARTING_POINTS,
    FixedRounds,
    RoundLimit,
    ToTheDeath,
)


@dataclass(frozen=True)
class EndResult:
    should_end: bool
    winners: frozenset[str] = field(default_factory=frozenset)
    losers: frozenset[str] = field(default_factory=frozenset)


CONTINUE = EndResult(should_end=False)


def evaluate_end_conditions(
    wizards: Sequence[str],
    points: Mapping[str, int],
    hit_points: Mapping[str, int],
    round_limit: RoundLimit,
    current_round: int,
) -> EndResult:
    """Decide whether a duel is over and, if so, who won.

    Elimination is checked first: when at most one wizard has hit points left
    the duel ends immediately and the survivors (if any) win. Otherwise a
    ``FixedRounds`` duel that has reached its last round ranks wizards by
    points, then hit points; every wizard tied with the top pair wins.

    Args:
        wizards: Participating wizard ids.
        points: Accumulated points (missing ids count as 0).
        hit_points: Hit points after this round's health deltas
            (missing ids count as 100).
        round_limit: ``FixedRounds(n)`` or ``ToTheDeath()``.
        current_round: The round that was just resolved.

    Returns:
        An ``EndResult``; ``winners`` and ``losers`` are empty while the duel continues.
    """
    alive = [w for w in wizards if hit_points.get(w, STARTING_HIT_POINTS) > 0]
    if len(alive) <= 1:
        return EndResult(
            should_end=True,
            winners=frozenset(alive),
            losers=frozenset(w for w in wizards if w not in alive),
        )

    if isinstance(round_limit, ToTheDeath):
        return CONTINUE
    if not isinstance(round_limit, FixedRounds):
        raise TypeError(f"Unsupported round limit: {round_limit!r}")
    if current_round < round_limit.rounds:
        return CONTINUE

    def score(wizard_id: str) -> tuple[int, int]:
        return (
            points.get(wizard_id, STARTING_POINTS),
            hit_points.get(wizard_id, STARTING_HIT_POINTS),
        )

    best = max(score(w) for w in wizards)
    winners = frozenset(w for w in wizards if score(w) == best)
    return EndResult(
        should_end=True,
        winners=winners,
        losers=frozenset(w for w in wizards if w not in winners),
    )
