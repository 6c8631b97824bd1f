"""Logging helpers for termpilot.

The terminal owns stdout, so records go to a rotating file under
``~/.termpilot/logs`` unless a stderr console handler is requested.
``TERMPILOT_LOG_DIR`` relocates the file.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["LOG_FORMAT", "setup_logging", "get_logger", "get_log_path", "level_for"]

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DIR_ENV = "TERMPILOT_LOG_DIR"
LOG_FILENAME = "termpilot.log"

# Third-party loggers that flood DEBUG with per-request noise.
_CHATTY = ("asyncio", "httpx", "httpcore", "openai")

_active_log_path: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = False,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the termpilot handlers on the root logger and return the log file path.

    Repeated calls are no-ops unless ``force`` is set, so embedding
    applications can call this freely.
    """

    global _active_log_path
    if _active_log_path is not None and not force:
        return _active_log_path

    directory = Path(log_dir or os.environ.get(LOG_DIR_ENV) or Path.home() / ".termpilot" / "logs").expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / LOG_FILENAME

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    for name in _CHATTY:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _active_log_path = log_path
    logging.getLogger(__name__).debug("Logging to %s at level %s", log_path, logging.getLevelName(level))
    return log_path


def level_for(debug_logging: bool) -> int:
    """Map the ``debug_logging`` setting onto a logging level."""

    return logging.DEBUG if debug_logging else logging.INFO


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the file configured by :func:`setup_logging`, if any."""

    return _active_log_path
