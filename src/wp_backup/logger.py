"""Logging setup shared by every wp-backup command."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Shell-era config files use "verbose"/"normal" instead of level names.
LEVEL_ALIASES = {
    "VERBOSE": "DEBUG",
    "NORMAL": "INFO",
    "QUIET": "WARNING",
    "WARN": "WARNING",
}

_HANDLER_MARKER = "_wp_backup_handler"


def normalize_level(level: Optional[str]) -> str:
    name = (level or "INFO").strip().upper()
    name = LEVEL_ALIASES.get(name, name)
    if not isinstance(logging.getLevelName(name), int):
        raise ValueError(f"Unknown log level '{level}'")
    return name


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Send log records to stderr and, when given, to a run-scoped log file.

    Calling this again replaces the handlers installed by a previous call, so
    the CLI can reconfigure once the project configuration is known.
    """
    root = logging.getLogger()
    root.setLevel(normalize_level(level))

    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    setattr(console, _HANDLER_MARKER, True)
    root.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        setattr(file_handler, _HANDLER_MARKER, True)
        root.addHandler(file_handler)
