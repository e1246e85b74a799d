"""Logging setup for atelier.

Everything the package logs goes through the ``atelier`` logger tree:
console on stdout plus an optional rotating file.  The HTTP clients behind
the model providers log every request at INFO, which drowns out tool and
ledger activity during a streamed session, so they are capped at WARNING.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from atelier.core.config import Settings, get_settings

ROOT_LOGGER = "atelier"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3

_configured = False


def quiet_libraries(names: str | list[str]) -> list[str]:
    """Raise the named third-party loggers to WARNING; returns the names applied."""
    if isinstance(names, str):
        names = names.split(",")
    applied = [name.strip() for name in names if name.strip()]
    for name in applied:
        logging.getLogger(name).setLevel(logging.WARNING)
    return applied


def _file_handler(log_file: str, fmt: logging.Formatter) -> RotatingFileHandler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8"
    )
    handler.setFormatter(fmt)
    return handler


def setup_logging(settings: Settings | None = None, force: bool = False) -> logging.Logger:
    """Attach handlers to the ``atelier`` logger once.

    ``force`` drops the handlers of a previous call and configures again.
    """
    global _configured
    logger = logging.getLogger(ROOT_LOGGER)
    if _configured and not force:
        return logger

    settings = settings or get_settings()
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    logger.propagate = False

    fmt = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(fmt)
    logger.addHandler(console)
    if settings.log_file:
        logger.addHandler(_file_handler(settings.log_file, fmt))

    quieted = quiet_libraries(settings.log_quiet)

    _configured = True
    logger.info(
        "Logging initialised (level=%s, file=%s, quiet=%s)",
        settings.log_level, settings.log_file or "-", ",".join(quieted) or "-",
    )
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Child logger under ``atelier``; bare names get the prefix added."""
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
