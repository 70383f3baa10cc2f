"""Logging setup for the sopsie CLI and host adapters.

Records go to a rotating ``sopsie.log`` under ``~/.sopsie/logs`` (or
``$SOPSIE_LOG_DIR``) and, optionally, to stderr.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["setup_logging"]

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
# Selector and subprocess chatter from asyncio drowns out our own debug output
_QUIETED_LOGGERS: tuple[str, ...] = ("asyncio",)

_active_log_path: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install root handlers once and return the log file path.

    Later calls are no-ops returning the same path unless ``force`` is set.
    """

    global _active_log_path
    if _active_log_path is not None and not force:
        return _active_log_path

    directory = Path(log_dir or os.environ.get("SOPSIE_LOG_DIR") or Path.home() / ".sopsie" / "logs")
    directory = directory.expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / "sopsie.log"

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    for name in _QUIETED_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _active_log_path = log_path
    return log_path
