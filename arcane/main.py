from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from typing import Any

from .config import Config, load_config
from .logging import install_asyncio_handler, setup_logging
from .services.credits import CreditLedger
from .services.db import Database
from .services.duel_store import DuelStore
from .services.duels import DuelService
from .services.fal_client import FalClient, FalConfig
from .services.finalizer import RoundFinalizer
from .services.illustrations import IllustrationPipeline, ImageBackend
from .services.image_store import ImageStore
from .services.images import ImageProcessor
from .services.jobs import DuelJobs
from .services.narrator import Narrator, OpenRouterNarrator
from .services.openrouter_client import OpenRouterClient, OpenRouterConfig
from .services.rounds import RoundCoordinator
from .services.scheduler import JobScheduler, SchedulerConfig
from .services.wizards import WizardService


log = logging.getLogger(__name__)


@dataclass
class Engine:
    """Every duel service wired against one database and one job queue."""

    db: Database
    scheduler: JobScheduler
    store: DuelStore
    wizards: WizardService
    credits: CreditLedger
    duels: DuelService
    rounds: RoundCoordinator
    finalizer: RoundFinalizer
    pipeline: IllustrationPipeline
    jobs: DuelJobs
    closers: list[Any] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.scheduler.stop()
        for c in self.closers:
            try:
                await c.aclose()
            except Exception as e:
                log.warning("Failed to close %s: %s", type(c).__name__, e)
        await self.db.close()


def build_engine(
    cfg: Config,
    db: Database,
    narrator: Narrator | None = None,
    prompt_backend: Any = None,
    context_backend: Any = None,
) -> Engine:
    """Wire the services. Collaborators left as None are built from ``cfg``."""
    closers: list[Any] = []
    scheduler = JobScheduler(
        SchedulerConfig(
            enabled=cfg.run_scheduled_jobs,
            workers=cfg.job_workers,
            max_attempts=cfg.job_max_attempts,
        )
    )

    if narrator is None or (cfg.use_context_images and context_backend is None):
        orc = OpenRouterClient(
            OpenRouterConfig(
                api_key=cfg.openrouter_api_key,
                default_model=cfg.default_model,
                fallback_model=cfg.fallback_model,
                image_model=cfg.image_model,
                site_url=cfg.openrouter_site_url,
                app_name=cfg.openrouter_app_name,
            )
        )
        closers.append(orc)
        if narrator is None:
            narrator = OpenRouterNarrator(orc)
        if cfg.use_context_images and context_backend is None:
            context_backend = orc

    if prompt_backend is None and cfg.fal_key:
        prompt_backend = FalClient(FalConfig(api_key=cfg.fal_key))
        closers.append(prompt_backend)
    if prompt_backend is None and context_backend is None:
        log.warning("No image backend configured; duels will be text only")

    store = DuelStore(db)
    wizards = WizardService(db)
    credits = CreditLedger(db)
    duels = DuelService(store, scheduler, wizards=wizards, auto_start_players=cfg.auto_start_players)
    rounds = RoundCoordinator(store, scheduler)
    finalizer = RoundFinalizer(store, wizard_stats=wizards)
    pipeline = IllustrationPipeline(
        store,
        duels,
        rounds,
        credits,
        ImageStore(cfg.image_dir),
        wizards,
        prompt_backend=prompt_backend,
        context_backend=context_backend,
        processor=ImageProcessor() if cfg.compress_images else None,
    )
    jobs = DuelJobs(
        scheduler,
        store,
        duels,
        finalizer,
        narrator,
        wizards,
        pipeline=pipeline if (prompt_backend or context_backend) else None,
        image_backend=ImageBackend.CONTEXT_AWARE if cfg.use_context_images else ImageBackend.PROMPT_ONLY,
    )
    jobs.register()

    return Engine(
        db=db,
        scheduler=scheduler,
        store=store,
        wizards=wizards,
        credits=credits,
        duels=duels,
        rounds=rounds,
        finalizer=finalizer,
        pipeline=pipeline,
        jobs=jobs,
        closers=closers,
    )


def build_bot(cfg: Config, engine: Engine):
    # Lazy import so the engine runs without the Discord stack loaded
    import discord  # type: ignore

    bot = discord.Bot(intents=discord.Intents.default())
    bot.arcane_cfg = cfg  # type: ignore[attr-defined]
    bot.arcane_duels = engine.duels  # type: ignore[attr-defined]
    bot.arcane_rounds = engine.rounds  # type: ignore[attr-defined]
    bot.arcane_wizards = engine.wizards  # type: ignore[attr-defined]
    bot.arcane_credits = engine.credits  # type: ignore[attr-defined]

    @bot.event
    async def on_ready():
        log.info("Logged in as %s (%s)", bot.user, bot.user and bot.user.id)
        gids = cfg.command_guild_ids
        if gids:
            try:
                await bot.sync_commands(guild_ids=gids, force=True)  # type: ignore[arg-type]
                log.info("Synced commands to guilds: %s", ",".join(str(g) for g in gids))
            except Exception as e:
                log.warning("Guild command sync failed: %s", e, exc_info=True)

    from .cogs.duel import setup as setup_duel

    setup_duel(bot)
    return bot


async def amain() -> None:
    cfg = load_config()
    logs_dir = setup_logging(cfg.log_level)
    log.info("Starting Arcane (logs in %s)", logs_dir)
    loop = asyncio.get_running_loop()
    install_asyncio_handler(loop)

    db = await Database.init(cfg.db_path)
    engine = build_engine(cfg, db)
    await engine.scheduler.start()
    # Queued jobs die with the process; pick up whatever the last run left behind
    await engine.jobs.requeue_unfinished()

    stop = asyncio.Event()
    bot = build_bot(cfg, engine) if cfg.discord_token else None

    def _graceful_signal(sig_name: str) -> None:
        log.info("Received %s, requesting graceful shutdown...", sig_name)
        stop.set()
        if bot is not None:
            loop.create_task(bot.close())

    for _sig, _name in ((signal.SIGINT, "SIGINT"), (signal.SIGTERM, "SIGTERM")):
        try:
            loop.add_signal_handler(_sig, _graceful_signal, _name)
        except NotImplementedError:
            # Not available on some platforms (e.g., Windows)
            pass

    try:
        if bot is not None:
            log.info("Logging in to Discord...")
            await bot.start(cfg.discord_token)
        else:
            log.info("DISCORD_TOKEN not set; running job workers only")
            await stop.wait()
    except asyncio.CancelledError:
        log.info("Cancelled, shutting down gracefully...")
    finally:
        if bot is not None and not bot.is_closed():
            await bot.close()
        await engine.aclose()
        log.info("Shutdown complete")


def main() -> None:
    try:
        asyncio.run(amain())
    except KeyboardInterrupt:
        # Redundant guard in case Ctrl-C propagates past amain(); keep output clean
        print("Interrupted, exiting cleanly.")


if __name__ == "__main__":
    main()
