from __future__ import annotations

import logging
import os
from logging.config import dictConfig

_LOG_LEVEL_ENV = "LOG_LEVEL"
_DEFAULT_LEVEL = "INFO"

_configured = False


def _resolve_level(level: str | int | None) -> str | int:
    if level is None:
        level = os.getenv(_LOG_LEVEL_ENV, "").strip() or _DEFAULT_LEVEL
    if isinstance(level, str):
        candidate = level.strip().upper()
        if not isinstance(logging.getLevelName(candidate), int):
            return _DEFAULT_LEVEL
        return candidate
    return level


def configure_logging(level: str | int | None = None, *, force: bool = False) -> None:
    """Configure process-wide logging once. ``level`` falls back to ``$LOG_LEVEL`` then INFO."""
    global _configured
    if _configured and not force:
        return

    log_level = _resolve_level(level)
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "level": log_level,
                    "formatter": "default",
                    "stream": "ext://sys.stderr",
                }
            },
            "root": {"handlers": ["default"], "level": log_level},
            # third-party scanners and servers are chatty at DEBUG
            "loggers": {
                "bleak": {"level": "WARNING"},
                "uvicorn": {"level": "WARNING"},
            },
        }
    )
    _configured = True
