"""Shared constants for the Raven matching and escrow engine."""

import os
from decimal import Decimal
from pathlib import Path


HOME_DIR = Path(os.getenv("RAVEN_HOME", str(Path.home() / ".raven")))
LOG_DIR = HOME_DIR / "logs"
LOG_FILE_NAME = "raven-engine.log"
LOG_LEVEL = os.getenv("RAVEN_LOG_LEVEL", "INFO").upper()
DB_DIR = HOME_DIR / "db"
DB_FILE = DB_DIR / "raven.db"
DATABASE_URL = os.getenv("RAVEN_DATABASE_URL")

SERVER_HOST = "127.0.0.1"
SERVER_PORT = 9890
API_BASE = os.getenv("RAVEN_API_BASE", f"http://{SERVER_HOST}:{SERVER_PORT}")
ACTOR_HEADER = "X-Actor-Id"
ACTOR_ENV_VAR = "RAVEN_ACTOR_ID"

DEFAULT_CURRENCY = "USD"
PLATFORM_FEE_RATE = Decimal(os.getenv("RAVEN_PLATFORM_FEE_RATE", "0.15"))
FEE_CACHE_TTL_SECONDS = 300
ADMIN_IDS = frozenset(
    item.strip() for item in os.getenv("RAVEN_ADMIN_IDS", "").split(",") if item.strip()
)

PAYMENT_PROCESSOR_URL = os.getenv("RAVEN_PAYMENT_PROCESSOR_URL")
PAYMENT_PROCESSOR_TIMEOUT_SECONDS = 10.0
PAYMENT_MAX_ATTEMPTS = 3
PAYMENT_RETRY_DELAY_SECONDS = 0.2
PAYMENT_RETRY_BACKOFF = 2.0

RECONCILE_INTERVAL_SECONDS = 60
RECONCILE_STALE_AFTER_SECONDS = 120
