"""Centralized configuration for the orderq engine.

Typed constants for rules, matching tolerances, confidence scoring, mail
fetching, and the SQLite store. Environment variable overrides use safe
defaults so the engine runs without extra env configuration.
"""

from __future__ import annotations

import os
from pathlib import Path

# --- App ---
APP_VERSION: str = "0.1.0"
ENV: str = os.getenv("ORDERQ_ENV", "development")

PROJECT_ROOT: Path = Path(__file__).parent.parent

# --- Rules ---
PLATFORM_RULES_PATH: Path = Path(
    os.getenv("ORDERQ_PLATFORM_RULES_PATH", str(PROJECT_ROOT / "config" / "platform_rules.yaml"))
)

# --- Extraction ---
MIN_USEFUL_BODY_CHARS: int = 100
PRODUCT_NAME_MAX_LEN: int = 120
PRODUCT_CONTEXT_WINDOW: int = 1200
ORDER_REF_MIN_LEN: int = 5
ORDER_REF_MAX_LEN: int = 40
MAX_ITEMS: int = int(os.getenv("ORDERQ_MAX_ITEMS", "5"))
DEFAULT_CURRENCY: str = os.getenv("ORDERQ_DEFAULT_CURRENCY", "INR")

# --- Confidence ---
CONFIDENCE_WEIGHTS: dict[str, float] = {
    "order_ref": 0.3,
    "amount": 0.2,
    "items": 0.25,
    "status": 0.1,
    "tracking_ref": 0.05,
}
PRODUCT_QUALITY_BONUS: float = 0.05
FRAGMENT_CONFIDENCE_CAP: float = 0.95
CORROBORATION_BONUS: float = float(os.getenv("ORDERQ_CORROBORATION_BONUS", "0.05"))
ORDER_CONFIDENCE_CAP: float = 0.99

# --- Matching ---
HEURISTIC_DATE_WINDOW_DAYS: int = int(os.getenv("ORDERQ_HEURISTIC_DATE_WINDOW_DAYS", "3"))
HEURISTIC_AMOUNT_TOLERANCE: float = float(os.getenv("ORDERQ_HEURISTIC_AMOUNT_TOLERANCE", "1.0"))
NAME_SIMILARITY_MIN: float = float(os.getenv("ORDERQ_NAME_SIMILARITY_MIN", "0.6"))

# --- Mail fetch ---
DEFAULT_DAYS_TO_FETCH: int = int(os.getenv("ORDERQ_DAYS_TO_FETCH", "7"))
MAX_EMAILS_PER_SYNC: int = int(os.getenv("ORDERQ_MAX_EMAILS_PER_SYNC", "50"))
FETCH_BATCH_SIZE: int = int(os.getenv("ORDERQ_FETCH_BATCH_SIZE", "20"))
FETCH_MAX_WORKERS: int = int(os.getenv("ORDERQ_FETCH_MAX_WORKERS", "4"))

# --- Data quality tiers (percent completeness) ---
DATA_QUALITY_HIGH: int = 80
DATA_QUALITY_MEDIUM: int = 60

# --- Database ---
DB_CONNECT_TIMEOUT: float = float(os.getenv("ORDERQ_DB_CONNECT_TIMEOUT", "30.0"))
DB_RETRY_MAX: int = int(os.getenv("ORDERQ_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("ORDERQ_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("ORDERQ_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("ORDERQ_DB_RETRY_JITTER", "0.1"))


def is_production() -> bool:
    """Check if running in production"""
    return ENV == "production"
