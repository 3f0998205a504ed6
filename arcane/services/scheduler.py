"""Deferred job queue used to move narrator and image work out of state transitions.

Delivery is at-least-once: a handler that raises is retried with exponential
backoff until ``max_attempts`` is reached, after which the job is parked in
``dead_letters``. Handlers must therefore be idempotent.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable


log = logging.getLogger(__name__)


JobHandler = Callable[..., Awaitable[Any]]

INTRODUCE_DUEL = "introduce_duel"
NARRATE_ROUND = "narrate_round"
GENERATE_ILLUSTRATION = "generate_illustration"
CONCLUDE_DUEL = "conclude_duel"


@dataclass
class SchedulerConfig:
    enabled: bool = True
    workers: int = 2
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0


@dataclass
class Job:
    name: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0
    last_error: str | None = None
    enqueued_at: float = field(default_factory=time.time)


class JobScheduler:
    def __init__(self, cfg: SchedulerConfig | None = None) -> None:
        self.cfg = cfg or SchedulerConfig()
        self._handlers: dict[str, JobHandler] = {}
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._retry_timers: set[asyncio.Task] = set()
        self.dead_letters: list[Job] = []
        # Jobs accepted while the scheduler is disabled
        self.skipped: list[Job] = []

    def register(self, name: str, handler: JobHandler) -> None:
        if name in self._handlers:
            raise ValueError(f"Handler for job '{name}' already registered")
        self._handlers[name] = handler

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def enqueue(self, name: str, **payload: Any) -> Job:
        """Hand a job to the queue and return immediately."""
        if name not in self._handlers:
            raise KeyError(f"No handler registered for job '{name}'")
        job = Job(name=name, payload=payload)
        if not self.cfg.enabled:
            log.debug("Scheduler disabled; not running job %s %s", name, payload)
            self.skipped.append(job)
            return job
        self._queue.put_nowait(job)
        log.debug("Enqueued job %s (%s) %s", job.name, job.id, payload)
        return job

    async def start(self) -> None:
        if self._workers:
            return
        for i in range(max(1, self.cfg.workers)):
            self._workers.append(asyncio.create_task(self._worker(), name=f"arcane-job-worker-{i}"))
        log.info("Started %d job workers", len(self._workers))

    async def stop(self) -> None:
        for task in [*self._workers, *self._retry_timers]:
            task.cancel()
        for task in [*self._workers, *self._retry_timers]:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers.clear()
        self._retry_timers.clear()
        log.info("Job workers stopped")

    async def drain(self) -> None:
        """Run queued jobs inline until the queue is empty.

        Retries are re-queued without delay, so a job that keeps failing ends
        up in ``dead_letters`` once it has used all its attempts.
        """
        while not self._queue.empty():
            job = self._queue.get_nowait()
            try:
                ok = await self._run(job)
                if not ok and job.attempts < self.cfg.max_attempts:
                    self._queue.put_nowait(job)
            finally:
                self._queue.task_done()

    async def _worker(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                ok = await self._run(job)
                if not ok and job.attempts < self.cfg.max_attempts:
                    self._schedule_retry(job)
            finally:
                self._queue.task_done()

    def _schedule_retry(self, job: Job) -> None:
        delay = min(self.cfg.retry_max_delay, self.cfg.retry_base_delay * (2 ** (job.attempts - 1)))
        log.info("Retrying job %s (%s) in %.1fs", job.name, job.id, delay)

        async def _later() -> None:
            await asyncio.sleep(delay)
            self._queue.put_nowait(job)

        timer = asyncio.create_task(_later())
        self._retry_timers.add(timer)
        timer.add_done_callback(self._retry_timers.discard)

    async def _run(self, job: Job) -> bool:
        handler = self._handlers[job.name]
        job.attempts += 1
        try:
            await handler(**job.payload)
            log.debug("Job %s (%s) finished on attempt %d", job.name, job.id, job.attempts)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.last_error = str(e)
            if job.attempts >= self.cfg.max_attempts:
                log.error(
                    "Job %s (%s) failed after %d attempts: %s", job.name, job.id, job.attempts, e, exc_info=True
                )
                self.dead_letters.append(job)
            else:
                log.warning("Job %s (%s) attempt %d failed: %s", job.name, job.id, job.attempts, e)
            return False
