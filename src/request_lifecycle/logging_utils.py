"""Logging setup for the ``request_lifecycle`` logger tree.

Only the package logger is configured; the root logger and whatever handlers
a host application installed on it are left alone. Records still propagate,
so an application's own handlers see lock and storage decisions too.
"""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path

from request_lifecycle.config import load_settings

PACKAGE_LOGGER = "request_lifecycle"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_logging_configured = False
_logging_lock = threading.Lock()

_logger = logging.getLogger(__name__)


def _is_owned(handler: logging.Handler) -> bool:
    return getattr(handler, "_request_lifecycle", False)


def _own(handler: logging.Handler) -> logging.Handler:
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler._request_lifecycle = True  # type: ignore[attr-defined]
    return handler


def configure_logging() -> logging.Logger:
    """Apply ``LOG_LEVEL``/``LOG_FILE`` to the package logger.

    Safe to call again after settings change: handlers installed by an
    earlier call are closed and replaced.
    """
    global _logging_configured

    settings = load_settings()
    level = getattr(logging, settings.logging.level.upper(), logging.INFO)
    package_logger = logging.getLogger(PACKAGE_LOGGER)

    for handler in [h for h in package_logger.handlers if _is_owned(h)]:
        package_logger.removeHandler(handler)
        handler.close()

    package_logger.addHandler(_own(logging.StreamHandler(sys.stderr)))

    if settings.logging.file:
        try:
            Path(settings.logging.file).parent.mkdir(parents=True, exist_ok=True)
            package_logger.addHandler(_own(logging.FileHandler(settings.logging.file)))
        except OSError as exc:
            _logger.warning("Failed to open log file %s: %s", settings.logging.file, exc)

    package_logger.setLevel(level)
    _logging_configured = True
    return package_logger


def get_logger(name: str) -> logging.Logger:
    if not _logging_configured:
        with _logging_lock:
            if not _logging_configured:
                configure_logging()
    return logging.getLogger(name)
