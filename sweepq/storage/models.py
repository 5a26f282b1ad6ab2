"""
Domain models (Pydantic v2) for persisted sweepq state.

One model per table. `from_db_row` converts sqlite3.Row dicts (ISO strings,
0/1 integers, JSON arrays) into typed values. Models holding OAuth tokens
hide them in repr so they never reach logs.
"""

from __future__ import annotations

import json
from datetime import date as date_type
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sweepq.utils.time import from_db_ts, parse_utc_offset, parse_wall_clock


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    PAST_DUE = "PAST_DUE"
    UNPAID = "UNPAID"


class CleanupAction(str, Enum):
    DELETE = "DELETE"
    ARCHIVE = "ARCHIVE"
    NOTHING = "NOTHING"


class LedgerStatus(str, Enum):
    CLAIMED = "claimed"
    COMMITTED = "committed"
    RELEASED = "released"
    RECONCILING = "reconciling"


class SummaryStatus(str, Enum):
    CLAIMED = "claimed"
    SENT = "sent"
    SKIPPED = "skipped"


class _Row(BaseModel):
    model_config = ConfigDict(frozen=True)


class User(_Row):
    id: int
    email: str
    subscription_status: SubscriptionStatus = SubscriptionStatus.UNPAID
    last_successful_payment_at: datetime | None = None
    last_payment_attempt_at: datetime | None = None
    last_sync: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> User:
        return cls(
            id=row["id"],
            email=row["email"],
            subscription_status=SubscriptionStatus(row["subscription_status"]),
            last_successful_payment_at=from_db_ts(row["last_successful_payment_at"]),
            last_payment_attempt_at=from_db_ts(row["last_payment_attempt_at"]),
            last_sync=from_db_ts(row["last_sync"]),
            created_at=from_db_ts(row["created_at"]),
            updated_at=from_db_ts(row["updated_at"]),
        )


class AccountAccess(_Row):
    """Decrypted OAuth credentials for one mailbox (1:1 with User by email)."""

    user_email: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    needs_reauthentication: bool = False
    last_refresh_at: datetime | None = None
    updated_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"AccountAccess(user_email={self.user_email!r}, expires_at={self.expires_at!r}, "
            f"needs_reauthentication={self.needs_reauthentication})"
        )

    __str__ = __repr__


class UserSettings(_Row):
    user_email: str
    daily_summary_enabled: bool = True
    daily_summary_time: str = "06:00"
    time_zone_offset: str = "-08"

    @field_validator("daily_summary_time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        parse_wall_clock(value)
        return value

    @field_validator("time_zone_offset")
    @classmethod
    def _check_offset(cls, value: str) -> str:
        parse_utc_offset(value)
        return value

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> UserSettings:
        return cls(
            user_email=row["user_email"],
            daily_summary_enabled=bool(row["daily_summary_enabled"]),
            daily_summary_time=row["daily_summary_time"],
            time_zone_offset=row["user_time_zone_offset"],
        )


class AutoCleanupSetting(_Row):
    """Per-user override of the cleanup policy for one category."""

    user_id: int
    category: str = Field(min_length=1)
    is_disabled: bool = False
    after_days_old: int = Field(default=7, ge=0)
    cleanup_action: CleanupAction = CleanupAction.NOTHING
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> AutoCleanupSetting:
        return cls(
            user_id=row["user_id"],
            category=row["category"],
            is_disabled=bool(row["is_disabled"]),
            after_days_old=row["after_days_old"],
            cleanup_action=CleanupAction(row["cleanup_action"]),
            created_at=from_db_ts(row["created_at"]),
            updated_at=from_db_ts(row["updated_at"]),
        )


class CustomEmailRule(_Row):
    """User-defined category with its classification hint. Carries no cleanup policy."""

    id: int | None = None
    user_id: int
    prompt_content: str
    category: str = Field(min_length=1)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> CustomEmailRule:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            prompt_content=row["prompt_content"],
            category=row["category"],
            created_at=from_db_ts(row["created_at"]),
            updated_at=from_db_ts(row["updated_at"]),
        )


class ProcessedEmail(_Row):
    """Idempotency ledger row, keyed by provider message id."""

    id: str
    user_id: int
    status: LedgerStatus
    claimed_at: datetime
    processed_at: datetime | None = None
    received_at: datetime | None = None
    attempts: int = 1
    labels_applied: list[str] = Field(default_factory=list)
    labels_removed: list[str] = Field(default_factory=list)
    ai_answer: str = ""
    category: str = ""
    action: CleanupAction | None = None
    error: str | None = None

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> ProcessedEmail:
        claimed_at = from_db_ts(row["claimed_at"])
        assert claimed_at is not None
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            status=LedgerStatus(row["status"]),
            claimed_at=claimed_at,
            processed_at=from_db_ts(row["processed_at"]),
            received_at=from_db_ts(row["received_at"]),
            attempts=row["attempts"],
            labels_applied=json.loads(row["labels_applied"] or "[]"),
            labels_removed=json.loads(row["labels_removed"] or "[]"),
            ai_answer=row["ai_answer"],
            category=row["category"],
            action=CleanupAction(row["action"]) if row["action"] else None,
            error=row["error"],
        )


class ProcessedDailySummary(_Row):
    user_id: int
    date: date_type
    status: SummaryStatus
    email_count: int = 0
    created_at: datetime | None = None

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> ProcessedDailySummary:
        return cls(
            user_id=row["user_id"],
            date=date_type.fromisoformat(row["date"]),
            status=SummaryStatus(row["status"]),
            email_count=row["email_count"],
            created_at=from_db_ts(row["created_at"]),
        )


class UserTokenUsageStat(_Row):
    user_email: str
    date: date_type
    month: int
    year: int
    tokens_consumed: int = Field(default=0, ge=0)

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> UserTokenUsageStat:
        return cls(
            user_email=row["user_email"],
            date=date_type.fromisoformat(row["date"]),
            month=row["month"],
            year=row["year"],
            tokens_consumed=row["tokens_consumed"],
        )


class EmailTraining(_Row):
    """Training corpus record. Feeds model improvement; never read at decision time."""

    user_email: str
    email_id: str
    from_address: str = ""
    subject: str = ""
    body: str = ""
    ai_answer: str
    confidence: float
    heuristics_used: bool = False


class DigestContent(_Row):
    """What the digest delivery collaborator receives. Rendering happens on its side."""

    user_id: int
    user_email: str
    local_date: date_type
    category_counts: dict[str, int] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.category_counts.values())
