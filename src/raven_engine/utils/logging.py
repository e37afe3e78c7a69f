"""Logging configuration."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from typing import Optional, Union

from raven_engine import constants
from raven_engine.utils.pathing import ensure_runtime_directories

# Per-request chatter from client libraries drowns out ledger transitions.
_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def setup_logging(level: Optional[Union[int, str]] = None) -> None:
    """Configure root logging with console + rotating file handlers.

    ``level`` defaults to ``RAVEN_LOG_LEVEL`` (INFO when unset).
    """
    ensure_runtime_directories()
    log_file = constants.LOG_DIR / constants.LOG_FILE_NAME

    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(log_file, maxBytes=5_000_000, backupCount=5)
    file_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level if level is not None else constants.LOG_LEVEL)
    root.handlers.clear()
    root.addHandler(console_handler)
    root.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
