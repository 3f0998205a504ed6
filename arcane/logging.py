from __future__ import annotations

import asyncio
import logging
import os
import sys
import threading
from logging import FileHandler
from logging.handlers import TimedRotatingFileHandler
from typing import Any


APP_LOG = "arcane.log"
ERROR_LOG = "errors.log"
DISCORD_LOG = "discord.log"

_orig_excepthook = None  # type: ignore[var-annotated]


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def _pick_logs_dir() -> str:
    """First writable directory among the usual candidates."""
    candidates = []
    env_dir = os.getenv("ARCANE_LOG_DIR")
    if env_dir:
        candidates.append(env_dir)
    candidates.append(os.path.join(os.getcwd(), "logs"))
    xdg_state = os.getenv("XDG_STATE_HOME")
    home = os.path.expanduser("~")
    if xdg_state:
        candidates.append(os.path.join(xdg_state, "arcane", "logs"))
    elif home:
        candidates.append(os.path.join(home, ".local", "state", "arcane", "logs"))
    if home:
        candidates.append(os.path.join(home, ".cache", "arcane", "logs"))
    try:
        uid = os.getuid()  # type: ignore[attr-defined]
    except AttributeError:
        uid = os.getpid()
    candidates.append(os.path.join("/tmp", f"arcane-{uid}", "logs"))

    for d in candidates:
        try:
            os.makedirs(d, exist_ok=True)
            probe = os.path.join(d, ".write-test")
            with open(probe, "a", encoding="utf-8") as f:
                f.write("")
            os.remove(probe)
            return d
        except OSError:
            continue
    return "/tmp"


class _NonErrorFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.ERROR


def _rotating(path: str, retention_days: int) -> FileHandler:
    return TimedRotatingFileHandler(path, when="midnight", interval=1, backupCount=retention_days, encoding="utf-8")


def setup_logging(level: str = "INFO", logs_dir: str | None = None) -> str:
    """Configure the root logger and return the directory logs are written to.

    ``arcane.log`` takes everything below ERROR, ``errors.log`` takes ERROR and
    above, and the discord library logs only to ``discord.log``.
    """
    global _orig_excepthook

    logs_dir = logs_dir or _pick_logs_dir()

    root = logging.getLogger()
    root.setLevel(level.upper())

    fmt = os.getenv("ARCANE_LOG_FORMAT", "%(asctime)s %(levelname)s %(name)s: %(message)s")
    datefmt = os.getenv("ARCANE_LOG_DATEFMT", "%Y-%m-%d %H:%M:%S")
    formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    app_log = _rotating(os.path.join(logs_dir, APP_LOG), _int_env("LOG_RETENTION_DAYS", 14))
    app_log.addFilter(_NonErrorFilter())
    app_log.setFormatter(formatter)

    error_log = _rotating(os.path.join(logs_dir, ERROR_LOG), _int_env("ERROR_LOG_RETENTION_DAYS", 90))
    error_log.setLevel(logging.ERROR)
    error_log.setFormatter(formatter)

    discord_handler = _rotating(os.path.join(logs_dir, DISCORD_LOG), _int_env("DISCORD_LOG_RETENTION_DAYS", 14))
    discord_handler.setFormatter(formatter)

    for h in root.handlers:
        h.close()
    root.handlers.clear()
    root.addHandler(console_handler)
    root.addHandler(app_log)
    root.addHandler(error_log)

    discord_logger = logging.getLogger("discord")
    for h in discord_logger.handlers:
        h.close()
    discord_logger.handlers.clear()
    discord_logger.addHandler(discord_handler)
    discord_logger.setLevel(getattr(logging, os.getenv("DISCORD_LOG_LEVEL", "INFO").upper(), logging.INFO))
    discord_logger.propagate = False

    # Retry noise from the HTTP stack stays out of arcane.log unless asked for
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logging.captureWarnings(True)

    if _orig_excepthook is None:
        _orig_excepthook = sys.excepthook

        def _log_excepthook(exc_type, exc, tb):
            logging.getLogger("unhandled").error("Unhandled exception", exc_info=(exc_type, exc, tb))
            _orig_excepthook(exc_type, exc, tb)  # type: ignore[misc]

        sys.excepthook = _log_excepthook  # type: ignore[assignment]

    def _thread_excepthook(args: threading.ExceptHookArgs) -> None:
        logging.getLogger("threading").error(
            "Unhandled thread exception in %s",
            getattr(args.thread, "name", "thread"),
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )

    threading.excepthook = _thread_excepthook  # type: ignore[assignment]

    return logs_dir


def _asyncio_exception_handler(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exc = context.get("exception")
    msg = context.get("message") or "Unhandled exception in event loop"
    if exc is not None:
        logging.getLogger("asyncio").error("%s", msg, exc_info=(type(exc), exc, exc.__traceback__))
    else:
        logging.getLogger("asyncio").error("%s: %r", msg, context)


def install_asyncio_handler(loop: asyncio.AbstractEventLoop) -> None:
    """Route exceptions from un-awaited tasks into the error log."""
    loop.set_exception_handler(_asyncio_exception_handler)
