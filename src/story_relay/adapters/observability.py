"""Runtime logging configuration with bounded retention."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path

DEFAULT_LOG_PATH = "work/logs/story_relay.log"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(process)d:%(threadName)s] [%(name)s] %(message)s"

_CONFIGURED = False


@dataclass(frozen=True)
class LoggingSettings:
    """Resolved logging knobs for one process."""

    level: int
    log_path: Path | None
    max_bytes: int
    backup_count: int
    lock_level: int
    access_level: int


def _int_env(name: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, min(maximum, value))


def _level_env(name: str, default: str) -> int:
    level_name = os.environ.get(name, default).strip().upper() or default
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        return int(getattr(logging, default))
    return level


def logging_settings_from_env() -> LoggingSettings:
    """Read STORY_RELAY_LOG_* variables; an empty STORY_RELAY_LOG_PATH disables the file log."""
    raw_path = os.environ.get("STORY_RELAY_LOG_PATH")
    if raw_path is None:
        log_path: Path | None = Path(DEFAULT_LOG_PATH)
    else:
        log_path = Path(raw_path.strip()) if raw_path.strip() else None
    level = _level_env("STORY_RELAY_LOG_LEVEL", "INFO")
    return LoggingSettings(
        level=level,
        log_path=log_path,
        max_bytes=_int_env(
            "STORY_RELAY_LOG_MAX_BYTES",
            5 * 1024 * 1024,
            minimum=64 * 1024,
            maximum=100 * 1024 * 1024,
        ),
        backup_count=_int_env("STORY_RELAY_LOG_BACKUP_COUNT", 10, minimum=1, maximum=120),
        lock_level=_level_env("STORY_RELAY_LOCK_LOG_LEVEL", logging.getLevelName(level)),
        access_level=_level_env("STORY_RELAY_ACCESS_LOG_LEVEL", "WARNING"),
    )


def configure_runtime_logging(settings: LoggingSettings | None = None) -> None:
    """Configure console + rotating file logs once per process."""
    global _CONFIGURED
    if _CONFIGURED:
        return
    resolved = settings or logging_settings_from_env()

    # Several server processes may share one database; tag lines with pid and thread.
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z")
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if resolved.log_path is not None:
        resolved.log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                filename=resolved.log_path,
                maxBytes=resolved.max_bytes,
                backupCount=resolved.backup_count,
                encoding="utf-8",
            )
        )

    root = logging.getLogger()
    root.setLevel(resolved.level)
    root.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    logging.getLogger("story_relay.core.locking").setLevel(resolved.lock_level)
    logging.getLogger("uvicorn.access").setLevel(resolved.access_level)

    _CONFIGURED = True
