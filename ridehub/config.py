# ridehub/config.py
from __future__ import annotations

import os
from dataclasses import dataclass

# load .env first
from dotenv import load_dotenv
load_dotenv()


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    return int(raw) if raw else default


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    return float(raw) if raw else default


def _env_flag(key: str) -> bool:
    return os.getenv(key, "").strip().lower() in ("1", "true", "yes", "on")


# --- read env ----------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ridehub.db").strip()
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")
AUTH_ALLOW_DEV_HEADER = _env_flag("AUTH_ALLOW_DEV_HEADER")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
STATIC_DIR = os.getenv("STATIC_DIR", os.path.join(os.path.dirname(__file__), "static"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
TXN_MAX_ATTEMPTS = _env_int("TXN_MAX_ATTEMPTS", 8)

# records older than this are moved to the archive tables
DATA_RETENTION_DAYS = _env_int("DATA_RETENTION_DAYS", 30)


@dataclass(frozen=True)
class PricingConfig:
    """Distance-tier pricing parameters (HKD)."""

    min_spend: int = 600
    tier1_rate: float = 12
    tier2_rate: float = 10
    tier3_rate: float = 8
    driver_fee_percentage: float = 0.08
    currency: str = "HKD"

    @classmethod
    def from_env(cls) -> "PricingConfig":
        return cls(
            min_spend=_env_int("PRICING_MIN_SPEND", cls.min_spend),
            tier1_rate=_env_float("PRICING_TIER1_RATE", cls.tier1_rate),
            tier2_rate=_env_float("PRICING_TIER2_RATE", cls.tier2_rate),
            tier3_rate=_env_float("PRICING_TIER3_RATE", cls.tier3_rate),
            driver_fee_percentage=_env_float("PRICING_DRIVER_FEE_PERCENTAGE", cls.driver_fee_percentage),
        )
