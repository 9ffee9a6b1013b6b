"""Log plumbing for the floorwatch daemon.

The loop daemon and ``--once`` runs started from cron share
``<home_dir>/logs/debug.log``; ConcurrentRotatingFileHandler serializes their
writes and rotations across processes. Timestamps are UTC to line up with
ledger block times.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from collections.abc import Iterable, Mapping
from pathlib import Path

from concurrent_log_handler import ConcurrentRotatingFileHandler

LOG_LEVEL_ENV = "FLOORWATCH_LOG_LEVEL"
LOG_LEVEL_NAMES = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET")
FALLBACK_LEVEL_NAME = "INFO"
LOG_RELATIVE_PATH = Path("logs") / "debug.log"
ROTATE_MAX_BYTES = 25 * 1024 * 1024
ROTATE_BACKUP_COUNT = 4
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"
# Width of the "<service> <logger name>" column.
_NAME_COLUMN_WIDTH = 36


def is_valid_level_name(level: object) -> bool:
    return str(level or "").strip().upper() in LOG_LEVEL_NAMES


def normalize_log_level_name(level: str | None) -> str:
    if not is_valid_level_name(level):
        return FALLBACK_LEVEL_NAME
    return str(level).strip().upper()


def level_from_name(level: str | None) -> int:
    return logging.getLevelNamesMapping()[normalize_log_level_name(level)]


def effective_level(configured: str | None, *, environ: Mapping[str, str] | None = None) -> int:
    """Resolve the level to run at.

    A valid ``FLOORWATCH_LOG_LEVEL`` wins over the configured level so an operator
    can turn on DEBUG for one run without editing program.yaml.
    """
    env = os.environ if environ is None else environ
    override = env.get(LOG_LEVEL_ENV)
    if override is not None and is_valid_level_name(override):
        return level_from_name(override)
    return level_from_name(configured)


def log_file_path(home_dir: str | Path) -> Path:
    return (Path(home_dir).expanduser() / LOG_RELATIVE_PATH).resolve()


def line_formatter(service_name: str) -> logging.Formatter:
    name_width = max(8, _NAME_COLUMN_WIDTH - len(service_name))
    formatter = logging.Formatter(
        fmt=(
            f"%(asctime)s.%(msecs)03dZ {service_name} %(name)-{name_width}s: "
            f"%(levelname)-8s %(message)s"
        ),
        datefmt=_TIMESTAMP_FORMAT,
    )
    formatter.converter = time.gmtime
    return formatter


def build_file_handler(
    home_dir: str | Path,
    *,
    service_name: str,
    max_bytes: int = ROTATE_MAX_BYTES,
    backup_count: int = ROTATE_BACKUP_COUNT,
) -> ConcurrentRotatingFileHandler:
    path = log_file_path(home_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = ConcurrentRotatingFileHandler(
        os.fspath(path),
        "a",
        maxBytes=max_bytes,
        backupCount=backup_count,
        use_gzip=False,
    )
    handler.setFormatter(line_formatter(service_name))
    return handler


def build_console_handler(service_name: str) -> logging.StreamHandler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(line_formatter(service_name))
    return handler


def set_levels(
    level: int,
    *,
    handlers: Iterable[logging.Handler | None] = (),
    loggers: Iterable[logging.Logger] = (),
) -> None:
    """Apply ``level`` to the root logger, its handlers, and the extras given."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in [*root_logger.handlers, *handlers]:
        if handler is not None:
            handler.setLevel(level)
    for logger in loggers:
        logger.setLevel(level)
