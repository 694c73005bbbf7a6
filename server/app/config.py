# server/app/config.py
import os
from pathlib import Path
from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[2]
load_dotenv(PROJECT_ROOT / ".env")

DATABASE_URL = os.getenv("COURIER_DATABASE_URL", f"sqlite:///{PROJECT_ROOT / 'courier.db'}")
HOST = os.getenv("COURIER_HOST", "0.0.0.0")
PORT = int(os.getenv("COURIER_PORT", "8000"))
LOG_LEVEL = os.getenv("COURIER_LOG_LEVEL", "info").lower()

# remaining numbers at or below which a range is reported as low
LOW_WATER_MARK = 10
EXPRESS_PREFIX_FALLBACK = "EX-"


def _flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def allow_range_overflow() -> bool:
    """Whether allocation may continue past a courier's end number.

    Read on every call so tests and operators can flip it without a restart.
    """
    return _flag("COURIER_ALLOW_RANGE_OVERFLOW")
