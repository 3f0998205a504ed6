"""Pytest configuration and shared fixtures."""
import os
import tempfile
from typing import AsyncGenerator

import pytest

from arcane.models.duel import FixedRounds, RoundOutcome
from arcane.services.credits import CreditLedger
from arcane.services.db import Database
from arcane.services.duel_store import DuelStore
from arcane.services.duels import DuelService
from arcane.services.finalizer import RoundFinalizer
from arcane.services.rounds import RoundCoordinator
from arcane.services.scheduler import (
    CONCLUDE_DUEL,
    GENERATE_ILLUSTRATION,
    INTRODUCE_DUEL,
    NARRATE_ROUND,
    JobScheduler,
    SchedulerConfig,
)
from arcane.services.wizards import WizardService


@pytest.fixture
async def temp_db() -> AsyncGenerator[str, None]:
    """Create a temporary database path for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp:
        db_path = tmp.name

    try:
        yield db_path
    finally:
        for suffix in ("", "-wal", "-shm"):
            try:
                os.unlink(db_path + suffix)
            except FileNotFoundError:
                pass


@pytest.fixture
async def db_with_schema(temp_db: str):
    """Create a database with the schema applied."""
    db = await Database.init(temp_db)
    try:
        yield db
    finally:
        await db.close()


class RecordingHandlers:
    """Job handlers that only remember what they were asked to do."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []

    def handler(self, name: str):
        async def _record(**payload):
            self.calls.append((name, payload))

        return _record

    def named(self, name: str) -> list[dict]:
        return [p for n, p in self.calls if n == name]


@pytest.fixture
def recorded():
    return RecordingHandlers()


@pytest.fixture
def scheduler(recorded) -> JobScheduler:
    """A scheduler whose handlers record payloads; nothing runs until drained."""
    s = JobScheduler(SchedulerConfig(workers=1, max_attempts=3, retry_base_delay=0.0))
    for name in (INTRODUCE_DUEL, NARRATE_ROUND, GENERATE_ILLUSTRATION, CONCLUDE_DUEL):
        s.register(name, recorded.handler(name))
    return s


@pytest.fixture
def store(db_with_schema) -> DuelStore:
    return DuelStore(db_with_schema)


@pytest.fixture
def wizards(db_with_schema) -> WizardService:
    return WizardService(db_with_schema)


@pytest.fixture
def credits(db_with_schema) -> CreditLedger:
    return CreditLedger(db_with_schema)


@pytest.fixture
def duels(store, scheduler, wizards) -> DuelService:
    return DuelService(store, scheduler, wizards=wizards, auto_start_players=None)


@pytest.fixture
def coordinator(store, scheduler) -> RoundCoordinator:
    return RoundCoordinator(store, scheduler)


@pytest.fixture
def finalizer(store, wizards) -> RoundFinalizer:
    return RoundFinalizer(store, wizard_stats=wizards)


def intro_outcome(prompt: str | None = "Two wizards face off") -> RoundOutcome:
    return RoundOutcome(narrative="The arena hums.", result_summary="It begins.", illustration_prompt=prompt)


async def start_duel_now(duels: DuelService, duel_id: str) -> str:
    """Run the introduction hand-off inline and return round 1's id."""
    await duels.create_introduction_round(duel_id, intro_outcome())
    round_id = await duels.open_first_round(duel_id)
    assert round_id is not None
    return round_id


@pytest.fixture
async def running_duel(duels):
    """Two wizards, three fixed rounds, already in round 1."""
    duel_id = await duels.create_duel(FixedRounds(3), ["w-a", "w-b"], ["p-1", "p-2"])
    round_id = await start_duel_now(duels, duel_id)
    return duel_id, round_id
