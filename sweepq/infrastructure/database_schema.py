"""
Database schema for sweepq.

Every per-user table references `user` with ON DELETE CASCADE, so deleting a
user purges all derived state. Uniqueness constraints carry the engine's
idempotency guarantees (claims, daily summaries, daily usage rows).
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from sweepq.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS user (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT NOT NULL UNIQUE,
        subscription_status TEXT NOT NULL DEFAULT 'UNPAID'
            CHECK (subscription_status IN ('ACTIVE', 'CANCELLED', 'PAST_DUE', 'UNPAID')),
        last_successful_payment_at TEXT,
        last_payment_attempt_at TEXT,
        last_sync TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS user_account_access (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_email TEXT NOT NULL UNIQUE
            REFERENCES user(email) ON DELETE CASCADE ON UPDATE CASCADE,
        access_token TEXT NOT NULL,
        refresh_token TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        needs_reauthentication INTEGER NOT NULL DEFAULT 0,
        last_refresh_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS user_settings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_email TEXT NOT NULL UNIQUE
            REFERENCES user(email) ON DELETE CASCADE ON UPDATE CASCADE,
        daily_summary_enabled INTEGER NOT NULL DEFAULT 1,
        daily_summary_time TEXT NOT NULL DEFAULT '06:00',
        user_time_zone_offset TEXT NOT NULL DEFAULT '-08'
    );

    CREATE TABLE IF NOT EXISTS auto_cleanup_setting (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE ON UPDATE CASCADE,
        category TEXT NOT NULL,
        is_disabled INTEGER NOT NULL DEFAULT 0,
        after_days_old INTEGER NOT NULL DEFAULT 7 CHECK (after_days_old >= 0),
        cleanup_action TEXT NOT NULL DEFAULT 'NOTHING'
            CHECK (cleanup_action IN ('DELETE', 'ARCHIVE', 'NOTHING')),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(category, user_id)
    );

    CREATE INDEX IF NOT EXISTS idx_auto_cleanup_setting_user
    ON auto_cleanup_setting(user_id);

    CREATE TABLE IF NOT EXISTS custom_email_rule (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE ON UPDATE CASCADE,
        prompt_content TEXT NOT NULL,
        category TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE UNIQUE INDEX IF NOT EXISTS idx_custom_email_rule_user_category
    ON custom_email_rule(user_id, category COLLATE NOCASE);

    -- Idempotency ledger: the primary key is the provider message id, globally
    CREATE TABLE IF NOT EXISTS processed_email (
        id TEXT PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE ON UPDATE CASCADE,
        status TEXT NOT NULL DEFAULT 'claimed'
            CHECK (status IN ('claimed', 'committed', 'released', 'reconciling')),
        claimed_at TEXT NOT NULL,
        processed_at TEXT,
        received_at TEXT,
        attempts INTEGER NOT NULL DEFAULT 1,
        labels_applied TEXT NOT NULL DEFAULT '[]',
        labels_removed TEXT NOT NULL DEFAULT '[]',
        ai_answer TEXT NOT NULL DEFAULT '',
        category TEXT NOT NULL DEFAULT '',
        action TEXT,
        error TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_processed_email_user ON processed_email(user_id);
    CREATE INDEX IF NOT EXISTS idx_processed_email_user_status
    ON processed_email(user_id, status, processed_at);

    CREATE TABLE IF NOT EXISTS processed_daily_summary (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES user(id) ON DELETE CASCADE ON UPDATE CASCADE,
        date TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'claimed'
            CHECK (status IN ('claimed', 'sent', 'skipped')),
        email_count INTEGER NOT NULL DEFAULT 0,
        claimed_at TEXT NOT NULL,
        created_at TEXT,
        UNIQUE(user_id, date)
    );

    CREATE TABLE IF NOT EXISTS user_token_usage_stat (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        date TEXT NOT NULL,
        month INTEGER NOT NULL,
        year INTEGER NOT NULL,
        tokens_consumed INTEGER NOT NULL DEFAULT 0 CHECK (tokens_consumed >= 0),
        user_email TEXT NOT NULL REFERENCES user(email) ON DELETE CASCADE ON UPDATE CASCADE,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(date, user_email)
    );

    CREATE INDEX IF NOT EXISTS idx_user_token_usage_stat_user_period
    ON user_token_usage_stat(user_email, year, month);

    CREATE TABLE IF NOT EXISTS email_training (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_email TEXT NOT NULL,
        email_id TEXT NOT NULL UNIQUE,
        from_address TEXT NOT NULL DEFAULT '',
        subject TEXT NOT NULL DEFAULT '',
        body TEXT NOT NULL DEFAULT '',
        ai_answer TEXT NOT NULL,
        confidence REAL NOT NULL,
        heuristics_used INTEGER NOT NULL DEFAULT 0
    );
"""

REQUIRED_TABLES: dict[str, list[str]] = {
    "user": ["id", "email", "subscription_status", "last_sync"],
    "user_account_access": ["user_email", "access_token", "expires_at", "needs_reauthentication"],
    "user_settings": ["user_email", "daily_summary_enabled", "daily_summary_time"],
    "auto_cleanup_setting": ["user_id", "category", "is_disabled", "after_days_old"],
    "custom_email_rule": ["user_id", "prompt_content", "category"],
    "processed_email": ["id", "user_id", "status", "labels_applied", "category"],
    "processed_daily_summary": ["user_id", "date", "status"],
    "user_token_usage_stat": ["date", "month", "year", "tokens_consumed", "user_email"],
    "email_training": ["email_id", "ai_answer", "confidence", "heuristics_used"],
}


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Side Effects:
    - Creates db_path's parent directory if needed
    - Creates tables and indexes if they don't exist
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
    finally:
        conn.close()

    logger.info("Database initialized: %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected schema

    Raises:
        ValueError: If tables or columns are missing
    """
    cursor = conn.cursor()

    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    existing_tables = {row[0] for row in cursor.fetchall()}

    missing_tables = set(REQUIRED_TABLES) - existing_tables
    if missing_tables:
        raise ValueError(f"Database missing tables: {missing_tables}")

    for table, required_cols in REQUIRED_TABLES.items():
        # Table names come from the hardcoded dict above
        cursor.execute(f"PRAGMA table_info({table})")
        existing_cols = {row[1] for row in cursor.fetchall()}

        missing_cols = set(required_cols) - existing_cols
        if missing_cols:
            raise ValueError(f"Table '{table}' missing columns: {missing_cols}")

    return True
