"""Logging setup for the CLI and the background sync loop.

Console output goes through rich; everything at DEBUG and above also lands in a
rotating file under ``<data_dir>/logs`` so a failed overnight sync can be
inspected afterwards.
"""
from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Mapping

from rich.logging import RichHandler

from stickyvault.core.config import AppConfig

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that are chatty at INFO.
_NOISY_LIBRARIES = ("httpx", "httpcore", "apscheduler", "watchdog", "aiosqlite")

_active_level = "INFO"


def _resolve(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelNamesMapping().get(str(level).upper())
    if resolved is None or resolved == logging.NOTSET:
        raise ValueError(f"Unsupported log level: {level}")
    return resolved


class SeverityOverrideFilter(logging.Filter):
    """Rewrite a record's level from a ``force_level`` extra or its ``log_category``.

    Categories are configured via ``general.log_overrides``, e.g.
    ``{"watcher": "DEBUG"}`` with ``logger.info(..., extra={"log_category": "watcher"})``.
    """

    def __init__(self, category_levels: Mapping[str, str]):
        super().__init__()
        self.category_levels = {name: _resolve(level) for name, level in category_levels.items()}

    def _relevel(self, record: logging.LogRecord, levelno: int) -> None:
        record.levelno = levelno
        record.levelname = logging.getLevelName(levelno)

    def filter(self, record: logging.LogRecord) -> bool:
        forced = getattr(record, "force_level", None)
        if forced:
            self._relevel(record, _resolve(forced))
        elif getattr(record, "log_category", None) in self.category_levels:
            self._relevel(record, self.category_levels[record.log_category])
        return True


def _log_file(config: AppConfig) -> Path:
    return config.general.data_dir / "logs" / config.general.log_file_name


def build_console_handler(levelno: int) -> logging.Handler:
    handler = RichHandler(rich_tracebacks=True, show_time=False, show_path=False)
    handler.setLevel(levelno)
    return handler


def build_file_handler(config: AppConfig) -> logging.Handler:
    path = _log_file(config)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=config.general.log_file_max_bytes,
        backupCount=config.general.log_file_backup_count,
        encoding="utf-8",
    )
    # The file always keeps the full trail, whatever the console shows.
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
    return handler


def setup_logging(config: AppConfig, *, level_name: str | None = None) -> Path:
    """Replace the root handlers with a console and a rotating file handler.

    ``level_name`` overrides ``general.log_level`` (the CLI's ``--log-level``).
    Returns the log file path.
    """
    global _active_level
    levelno = _resolve(level_name or config.general.log_level)
    _active_level = logging.getLevelName(levelno)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(levelno)

    overrides = SeverityOverrideFilter(config.general.log_overrides)
    for handler in (build_console_handler(levelno), build_file_handler(config)):
        handler.addFilter(overrides)
        root.addHandler(handler)

    logging.captureWarnings(True)

    quiet = max(levelno, logging.WARNING)
    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(quiet if levelno > logging.DEBUG else logging.NOTSET)

    return _log_file(config)


def set_logging_level(level_name: str) -> None:
    """Change the root and console levels at runtime; the file handler stays at DEBUG."""
    global _active_level
    levelno = _resolve(level_name)
    _active_level = logging.getLevelName(levelno)

    root = logging.getLogger()
    root.setLevel(levelno)
    for handler in root.handlers:
        if not isinstance(handler, logging.handlers.RotatingFileHandler):
            handler.setLevel(levelno)


def get_current_log_level() -> str:
    return _active_level
