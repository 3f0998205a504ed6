"""Duel and round state for wizard duels."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, Field


STARTING_POINTS = 0
STARTING_HIT_POINTS = 100
MIN_HIT_POINTS = 0
MAX_HIT_POINTS = 100
MIN_WIZARDS = 2

SHORTCODE_LENGTH = 6
SHORTCODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

TO_THE_DEATH = "TO_THE_DEATH"


class DuelStatus(str, Enum):
    WAITING_FOR_PLAYERS = "WAITING_FOR_PLAYERS"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (DuelStatus.COMPLETED, DuelStatus.CANCELLED)


class RoundStatus(str, Enum):
    WAITING_FOR_SPELLS = "WAITING_FOR_SPELLS"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"


class RoundKind(str, Enum):
    SPELL_CASTING = "SPELL_CASTING"
    COUNTER_SPELL = "COUNTER_SPELL"
    FINAL_ROUND = "FINAL_ROUND"
    CONCLUSION = "CONCLUSION"


# ---------------------- Errors ----------------------


class DuelError(Exception):
    """Base class for duel precondition failures surfaced to callers."""


class NotFound(DuelError):
    pass


class InvalidState(DuelError):
    pass


class DuplicatePlayer(DuelError):
    pass


class AlreadyTerminal(DuelError):
    pass


# ---------------------- Round limit ----------------------


@dataclass(frozen=True)
class FixedRounds:
    """Duel ends after ``rounds`` rounds unless someone is eliminated first."""

    rounds: int

    def __post_init__(self) -> None:
        if self.rounds < 1:
            raise ValueError(f"FixedRounds needs at least one round, got {self.rounds}")

    def describe(self) -> str:
        return f"a {self.rounds} round duel"

    def to_storage(self) -> int | str:
        return self.rounds


@dataclass(frozen=True)
class ToTheDeath:
    """Duel only ends by elimination."""

    def describe(self) -> str:
        return "to the death"

    def to_storage(self) -> int | str:
        return TO_THE_DEATH


RoundLimit = Union[FixedRounds, ToTheDeath]


def parse_round_limit(raw: Any) -> RoundLimit:
    """Build a round limit from its stored form (an int or ``"TO_THE_DEATH"``)."""
    if isinstance(raw, (FixedRounds, ToTheDeath)):
        return raw
    if isinstance(raw, str):
        value = raw.strip().upper()
        if value == TO_THE_DEATH:
            return ToTheDeath()
        try:
            return FixedRounds(int(value))
        except ValueError as e:
            raise ValueError(f"Invalid round limit: {raw!r}") from e
    if isinstance(raw, bool):
        raise ValueError(f"Invalid round limit: {raw!r}")
    if isinstance(raw, int):
        return FixedRounds(raw)
    raise ValueError(f"Invalid round limit: {raw!r}")


def clamp_hit_points(value: int) -> int:
    return max(MIN_HIT_POINTS, min(MAX_HIT_POINTS, int(value)))


# ---------------------- Records ----------------------


class Spell(BaseModel):
    text: str
    submitted_at: float = Field(default_factory=time.time)


class RoundOutcome(BaseModel):
    """Structured result of resolving one round."""

    narrative: str
    result_summary: str | None = None
    illustration_prompt: str | None = None
    illustration_ref: str | None = None
    points_awarded: dict[str, int] | None = None
    health_delta: dict[str, int] | None = None
    luck_rolls: dict[str, int] | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass
class Duel:
    """A match between two or more wizards.

    Attributes:
        id: Opaque duel id.
        status: Lifecycle status.
        wizards: Participating wizard ids, in join order.
        players: Participating player ids, in join order.
        round_limit: ``FixedRounds(n)`` or ``ToTheDeath()``.
        current_round: Number of the round currently being played (1-based).
        points: Wizard id to accumulated points.
        hit_points: Wizard id to remaining hit points (0..100).
        pending_actors: Wizards that still owe an action this round.
        shortcode: Six character join code.
        winners: Set once, on completion.
        losers: Set once, on completion.
        featured_illustration: Image ref of the introduction illustration.
        is_campaign: Campaign battles do not count towards wizard records.
    """

    id: str
    round_limit: RoundLimit
    wizards: list[str]
    players: list[str]
    shortcode: str
    status: DuelStatus = DuelStatus.WAITING_FOR_PLAYERS
    current_round: int = 1
    points: dict[str, int] = field(default_factory=dict)
    hit_points: dict[str, int] = field(default_factory=dict)
    pending_actors: set[str] = field(default_factory=set)
    winners: set[str] | None = None
    losers: set[str] | None = None
    featured_illustration: str | None = None
    is_campaign: bool = False
    text_only_mode: bool = False
    text_only_reason: str | None = None
    image_credit_consumed: bool = False
    image_credit_consumed_by: str | None = None
    created_at: float = field(default_factory=time.time)

    def points_for(self, wizard_id: str) -> int:
        return self.points.get(wizard_id, STARTING_POINTS)

    def hit_points_for(self, wizard_id: str) -> int:
        return self.hit_points.get(wizard_id, STARTING_HIT_POINTS)

    def add_wizards(self, wizard_ids: list[str]) -> None:
        """Append wizards with starting points, hit points and a pending action."""
        for wizard_id in wizard_ids:
            if wizard_id in self.wizards:
                raise ValueError(f"Wizard {wizard_id} is already in duel {self.id}")
            self.wizards.append(wizard_id)
            self.points[wizard_id] = STARTING_POINTS
            self.hit_points[wizard_id] = STARTING_HIT_POINTS
            self.pending_actors.add(wizard_id)

    def reset_pending_actors(self) -> None:
        self.pending_actors = set(self.wizards)

    def apply_outcome(self, outcome: RoundOutcome) -> None:
        """Add awarded points and clamped health deltas to the running totals.

        Entries for wizards outside this duel are ignored.
        """
        for wizard_id, delta in (outcome.points_awarded or {}).items():
            if wizard_id not in self.wizards:
                continue
            self.points[wizard_id] = self.points_for(wizard_id) + int(delta)
        for wizard_id, delta in (outcome.health_delta or {}).items():
            if wizard_id not in self.wizards:
                continue
            self.hit_points[wizard_id] = clamp_hit_points(self.hit_points_for(wizard_id) + int(delta))


@dataclass
class Round:
    id: str
    duel_id: str
    round_number: int
    kind: RoundKind = RoundKind.SPELL_CASTING
    status: RoundStatus = RoundStatus.WAITING_FOR_SPELLS
    spells: dict[str, Spell] = field(default_factory=dict)
    outcome: RoundOutcome | None = None
    updated_at: float = field(default_factory=time.time)

    @property
    def is_introduction(self) -> bool:
        return self.round_number == 0

    @property
    def illustration_ref(self) -> str | None:
        return self.outcome.illustration_ref if self.outcome else None
