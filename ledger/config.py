import logging
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[1]
load_dotenv(ROOT_DIR / ".env")


def env(name: str, default: str) -> str:
    value = os.environ.get(name)
    if value is None or str(value).strip() == "":
        return default
    return value


# ================== DATABASE ==================

DATABASE_URL = env("DATABASE_URL", f"sqlite:///{ROOT_DIR / 'mining_ledger.db'}")
SQL_ECHO = env("LEDGER_SQL_ECHO", "false").lower() in ("1", "true", "yes")

# ================== ENGINE ==================

DEFAULT_CURRENCY = env("LEDGER_DEFAULT_CURRENCY", "TRX")
SETTINGS_TTL_SECONDS = float(env("LEDGER_SETTINGS_TTL", "60"))

# Fixed-point precision for every monetary and mining-power column.
AMOUNT_DECIMALS = 8

# ================== LOGGING ==================

LOG_LEVEL = env("LEDGER_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
