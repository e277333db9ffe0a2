"""Logging helpers for remoterun."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
import tempfile
from typing import Union

LOG_SUBPATH = Path("logs") / "remoterun.log"
STRUCTURED_LOG_SUBPATH = Path("logs") / "remoterun.jsonl"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB per log segment
BACKUP_COUNT = 3
FALLBACK_ROOT = Path(tempfile.gettempdir()) / "remoterun"


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        phase = getattr(record, "phase", None)
        if phase:
            log_entry["phase"] = phase
        return json.dumps(log_entry)


def setup_logging(
    home_dir: Path,
    level: Union[str, int] = logging.WARNING,
    structured: bool = False,
) -> Path:
    """Configure remoterun logging with optional structured JSON output.

    Args:
        home_dir: Application directory that holds the ``logs`` folder.
        level: Logging level (string name or int constant).
        structured: Whether to enable structured JSON logging.

    Returns:
        Path to the primary (text) log file.
    """
    log_path = _resolve_log_path(home_dir, LOG_SUBPATH)

    resolved_level = _resolve_level(level)
    text_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(text_formatter)

    # Child output goes to stdout on the client; keep log lines off it.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(text_formatter)

    logger = logging.getLogger("remoterun")
    _reset_handlers(logger)
    logger.setLevel(resolved_level)
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    if structured:
        json_path = _resolve_log_path(home_dir, STRUCTURED_LOG_SUBPATH)
        json_handler = RotatingFileHandler(
            json_path,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        json_handler.setFormatter(JSONFormatter())
        logger.addHandler(json_handler)

    logger.propagate = False
    return log_path


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.WARNING)
    return int(level)


def _resolve_log_path(home_dir: Path, subpath: Path) -> Path:
    primary = home_dir / subpath
    try:
        primary.parent.mkdir(parents=True, exist_ok=True)
        return primary
    except PermissionError:
        fallback = FALLBACK_ROOT / subpath
        fallback.parent.mkdir(parents=True, exist_ok=True)
        print(
            f"[config] Unable to write logs under '{home_dir}'; "
            f"falling back to '{fallback.parent}'.",
            file=sys.stderr,
        )
        return fallback


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


__all__ = ["setup_logging", "JSONFormatter", "LOG_SUBPATH", "STRUCTURED_LOG_SUBPATH", "FALLBACK_ROOT"]
