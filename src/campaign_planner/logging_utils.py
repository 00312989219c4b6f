"""Logging helpers for the campaign planner."""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path

from campaign_planner.config import Settings, load_settings

_logging_configured = False
_logging_lock = threading.Lock()

_logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# httpx logs every request line at INFO, including remote sync URLs.
_CHATTY_LOGGERS = ("httpx", "httpcore")


def _formatted(handler: logging.Handler) -> logging.Handler:
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
    return handler


def configure_logging(settings: Settings | None = None) -> None:
    """Configure root logging for the storage core and its HTTP surface.

    Logs go to stderr and, when ``settings.logging.file`` is set, to that file
    as well. An unwritable log file only costs the file handler.
    """
    global _logging_configured

    settings = settings or load_settings()
    level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [_formatted(logging.StreamHandler(sys.stderr))]
    if settings.logging.file:
        try:
            Path(settings.logging.file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(_formatted(logging.FileHandler(settings.logging.file)))
        except OSError as exc:
            _logger.warning("Failed to open log file %s: %s", settings.logging.file, exc)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    chatty_level = level if level <= logging.DEBUG else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    if not _logging_configured:
        with _logging_lock:
            if not _logging_configured:
                configure_logging()
    return logging.getLogger(name)
