"""Filesystem helpers for the Raven engine."""

from __future__ import annotations

from pathlib import Path

from raven_engine import constants


def ensure_runtime_directories() -> dict[str, Path]:
    """Create the log directory and, for the default SQLite ledger, its db directory."""
    required = {"home": constants.HOME_DIR, "logs": constants.LOG_DIR}
    if constants.DATABASE_URL is None:
        required["db"] = constants.DB_DIR

    for path in required.values():
        path.mkdir(parents=True, exist_ok=True)

    return required
