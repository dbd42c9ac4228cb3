from __future__ import annotations

import json
import logging
import logging.config
from pathlib import Path
from typing import Any, Dict

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_RESERVED = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

# Third-party loggers that are chatty at DEBUG.
_QUIET = ("aiosqlite", "apscheduler", "aiohttp.access")


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with the `extra=` fields of the call merged in."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED and not key.startswith("_")
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def build_config(level: str, *, json_console: bool, log_file: str = "") -> Dict[str, Any]:
    """dictConfig for the CLI: console always, a rotating JSON file when `log_file` is set."""

    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json" if json_console else "plain",
        },
    }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "json",
            "filename": log_file,
            "maxBytes": 1024 * 1024,
            "backupCount": 3,
            "encoding": "utf-8",
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "plain": {"format": "%(asctime)s %(levelname)-7s %(name)s %(message)s"},
            "json": {"()": JsonFormatter},
        },
        "handlers": handlers,
        "root": {"level": level, "handlers": list(handlers)},
        "loggers": {name: {"level": "WARNING"} for name in _QUIET},
    }


_configured = False


def configure_logging(settings=None) -> None:
    """Configure process logging once."""

    global _configured
    if _configured:
        return

    if settings is None:
        from fieldsync.core.settings import get_settings

        settings = get_settings()

    logging.config.dictConfig(
        build_config(settings.log_level, json_console=settings.log_json, log_file=settings.log_file)
    )
    logging.captureWarnings(True)
    _configured = True


__all__ = ["JsonFormatter", "build_config", "configure_logging"]
