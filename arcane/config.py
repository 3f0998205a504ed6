from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


_TRUE = {"1", "true", "yes", "on"}


@dataclass
class Config:
    openrouter_api_key: str
    discord_token: str | None = None
    fal_key: str | None = None
    default_model: str = "google/gemini-2.5-flash"
    fallback_model: str = "google/gemini-2.5-flash-lite"
    image_model: str = "google/gemini-2.5-flash-image-preview"
    openrouter_site_url: str | None = None
    openrouter_app_name: str | None = None
    db_path: str = "data/arcane.db"
    image_dir: str = "data/images"
    log_level: str = "INFO"
    # Engine toggles, handed to the services at construction
    use_context_images: bool = False
    compress_images: bool = True
    run_scheduled_jobs: bool = True
    job_max_attempts: int = 3
    job_workers: int = 2
    auto_start_players: int | None = 2
    # Fast command sync to specific guilds (comma-separated IDs)
    command_guild_ids: list[int] | None = None


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in _TRUE


def _positive_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None
    if value < 1:
        raise RuntimeError(f"{name} must be at least 1, got {value}")
    return value


def _guild_ids(raw: str) -> list[int] | None:
    parsed: list[int] = []
    for part in raw.replace(";", ",").split(","):
        p = part.strip()
        if not p:
            continue
        try:
            parsed.append(int(p))
        except ValueError:
            # ignore malformed entries
            continue
    return parsed or None


def load_config() -> Config:
    load_dotenv(override=False)

    openrouter_api_key = os.getenv("OPENROUTER_API_KEY", "").strip()
    if not openrouter_api_key:
        raise RuntimeError("OPENROUTER_API_KEY is required in environment or .env")

    raw_auto_start = os.getenv("AUTO_START_PLAYERS", "").strip()
    auto_start: int | None = 2
    if raw_auto_start:
        auto_start = None if raw_auto_start in {"0", "off", "none"} else _positive_int("AUTO_START_PLAYERS", 2)

    return Config(
        openrouter_api_key=openrouter_api_key,
        discord_token=os.getenv("DISCORD_TOKEN", "").strip() or None,
        fal_key=os.getenv("FAL_KEY", "").strip() or None,
        default_model=os.getenv("DEFAULT_MODEL", "").strip() or "google/gemini-2.5-flash",
        fallback_model=os.getenv("FALLBACK_MODEL", "").strip() or "google/gemini-2.5-flash-lite",
        image_model=os.getenv("IMAGE_MODEL", "").strip() or "google/gemini-2.5-flash-image-preview",
        openrouter_site_url=os.getenv("OPENROUTER_SITE_URL") or None,
        openrouter_app_name=os.getenv("OPENROUTER_APP_NAME") or None,
        db_path=os.getenv("ARCANE_DB_PATH", "").strip() or "data/arcane.db",
        image_dir=os.getenv("ARCANE_IMAGE_DIR", "").strip() or "data/images",
        log_level=os.getenv("LOG_LEVEL", "").strip() or "INFO",
        use_context_images=_flag("USE_CONTEXT_IMAGES", False),
        compress_images=_flag("COMPRESS_IMAGES", True),
        run_scheduled_jobs=_flag("RUN_SCHEDULED_JOBS", True),
        job_max_attempts=_positive_int("JOB_MAX_ATTEMPTS", 3),
        job_workers=_positive_int("JOB_WORKERS", 2),
        auto_start_players=auto_start,
        command_guild_ids=_guild_ids(os.getenv("COMMAND_GUILD_IDS", "").strip()),
    )
