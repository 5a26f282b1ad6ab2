"""Centralized configuration for the sweepq engine.

Typed constants for database, engine, metering and credential settings.
Environment variable overrides use safe defaults so the engine starts
without extra env configuration.
"""

from __future__ import annotations

import os

from dotenv import load_dotenv

# Load environment variables from .env file before any constant is read
load_dotenv()

# --- App ---
APP_VERSION: str = "0.1.0"

# --- Database ---
DB_POOL_SIZE: int = int(os.getenv("SWEEPQ_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(os.getenv("SWEEPQ_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(os.getenv("SWEEPQ_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(os.getenv("SWEEPQ_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(os.getenv("SWEEPQ_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("SWEEPQ_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("SWEEPQ_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("SWEEPQ_DB_RETRY_JITTER", "0.1"))

# --- Engine ---
ENGINE_USER_WORKERS: int = int(os.getenv("SWEEPQ_USER_WORKERS", "4"))
ENGINE_MESSAGE_WORKERS: int = int(os.getenv("SWEEPQ_MESSAGE_WORKERS", "1"))
# A claim older than this without commit is considered abandoned and may be reclaimed
CLAIM_LEASE_SECONDS: int = int(os.getenv("SWEEPQ_CLAIM_LEASE_SECONDS", "900"))
CLASSIFIER_CONFIDENCE_THRESHOLD: float = float(
    os.getenv("SWEEPQ_CONFIDENCE_THRESHOLD", "0.6")
)
TRAINING_MODE: bool = os.getenv("SWEEPQ_TRAINING_MODE", "false").lower() == "true"

# --- Credentials ---
TOKEN_REFRESH_MARGIN_SECONDS: int = int(os.getenv("SWEEPQ_TOKEN_REFRESH_MARGIN", "300"))

# --- Cleanup defaults ---
DEFAULT_AFTER_DAYS_OLD: int = 7
DEFAULT_POLICIES_PATH: str | None = os.getenv("SWEEPQ_DEFAULT_POLICIES_PATH")

# --- Policy cache ---
POLICY_CACHE_MAX_USERS: int = int(os.getenv("SWEEPQ_POLICY_CACHE_MAX_USERS", "1024"))
POLICY_CACHE_TTL_SECONDS: float = float(os.getenv("SWEEPQ_POLICY_CACHE_TTL", "300"))

# --- Token quotas (tokens per calendar month, by subscription status) ---
QUOTA_MONTHLY_ACTIVE: int = int(os.getenv("SWEEPQ_QUOTA_ACTIVE", "20000000"))
QUOTA_MONTHLY_PAST_DUE: int = int(os.getenv("SWEEPQ_QUOTA_PAST_DUE", "2000000"))
QUOTA_MONTHLY_UNPAID: int = int(os.getenv("SWEEPQ_QUOTA_UNPAID", "50000"))
QUOTA_MONTHLY_CANCELLED: int = int(os.getenv("SWEEPQ_QUOTA_CANCELLED", "0"))
# 0 disables the per-day cap
QUOTA_DAILY_CAP: int = int(os.getenv("SWEEPQ_QUOTA_DAILY_CAP", "0"))

# --- Daily summary ---
DIGEST_LOOKBACK_HOURS: int = 24
