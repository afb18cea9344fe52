from __future__ import annotations

import logging
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "netpath"
LOG_FILE_NAME = "netpath.log.jsonl"
# Emitted keys: ts, level, logger, message, event, then the event's own fields.
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
RENAMED_FIELDS = {"asctime": "ts", "levelname": "level", "name": "logger"}


def _parse_level(name: str) -> int:
    text = str(name).strip()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text.upper())
    return level if isinstance(level, int) else logging.INFO


def _resolve_log_dir(configured_out_dir: str) -> Path | None:
    candidates = (
        Path(configured_out_dir) / "logs",
        Path(gettempdir()) / "netpath" / "logs",
    )
    for log_dir in candidates:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            probe = log_dir / ".writetest"
            probe.touch(exist_ok=True)
            probe.unlink(missing_ok=True)
            return log_dir
        except OSError:
            continue
    return None


def _formatter() -> jsonlogger.JsonFormatter:
    return jsonlogger.JsonFormatter(
        LOG_FORMAT,
        rename_fields=RENAMED_FIELDS,
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )


def get_logger() -> logging.Logger:
    """The package's JSON logger: stderr always, plus a JSONL file under ``<out_dir>/logs``."""
    logger = logging.getLogger(LOGGER_NAME)

    if getattr(logger, "_configured", False):
        return logger

    logger.setLevel(_parse_level(settings.log_level))
    logger.propagate = False

    formatter = _formatter()

    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)

    log_dir = _resolve_log_dir(settings.out_dir)
    if log_dir is not None:
        try:
            fh = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
            fh.setFormatter(formatter)
            logger.addHandler(fh)
        except OSError:
            pass

    logger._configured = True  # type: ignore[attr-defined]
    return logger


LOGGER: logging.Logger | None = None


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log one structured event; fields set to ``None`` are left out."""
    global LOGGER
    if LOGGER is None:
        LOGGER = get_logger()
    extra = {key: value for key, value in fields.items() if value is not None}
    LOGGER.log(level, event, extra={"event": event, **extra})
