"""
Token usage metering for AI classification.

Every classifier call is charged with its reported token cost, whatever the
downstream cleanup outcome. Usage is kept as one row per (date, user email)
with denormalized month/year, so a month's total is the sum of its days.

Quota limits per subscription status (tokens per calendar month):
- ACTIVE: full budget
- PAST_DUE: degraded grace budget
- UNPAID: near zero
- CANCELLED: none

An optional per-day cap applies on top of the monthly budget. Periods are
UTC calendar days and months.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from types import MappingProxyType
from typing import Any, NamedTuple

from sweepq.config import (
    QUOTA_DAILY_CAP,
    QUOTA_MONTHLY_ACTIVE,
    QUOTA_MONTHLY_CANCELLED,
    QUOTA_MONTHLY_PAST_DUE,
    QUOTA_MONTHLY_UNPAID,
)
from sweepq.contracts.errors import QuotaExceededError
from sweepq.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from sweepq.observability.logging import get_logger, mask_email
from sweepq.observability.telemetry import counter, log_event
from sweepq.storage.models import SubscriptionStatus
from sweepq.utils.time import to_db_ts, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class QuotaTable:
    """Monthly token budget per subscription status plus an optional daily cap (0 = off)."""

    monthly: Mapping[SubscriptionStatus, int] = field(
        default_factory=lambda: MappingProxyType(
            {
                SubscriptionStatus.ACTIVE: QUOTA_MONTHLY_ACTIVE,
                SubscriptionStatus.PAST_DUE: QUOTA_MONTHLY_PAST_DUE,
                SubscriptionStatus.UNPAID: QUOTA_MONTHLY_UNPAID,
                SubscriptionStatus.CANCELLED: QUOTA_MONTHLY_CANCELLED,
            }
        )
    )
    daily_cap: int = QUOTA_DAILY_CAP

    def monthly_limit(self, status: SubscriptionStatus) -> int:
        return self.monthly.get(status, 0)


class Ok(NamedTuple):
    month_total: int
    month_limit: int
    day_total: int


class QuotaExceeded(NamedTuple):
    month_total: int
    month_limit: int
    day_total: int
    reason: str


ChargeResult = Ok | QuotaExceeded


class TokenUsageMeter:
    """
    Charges and checks per-user token usage

    The quota table and clock are fixed at construction; build a new meter
    to apply a changed quota table.
    """

    def __init__(
        self,
        quota_table: QuotaTable | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.quota_table = quota_table or QuotaTable()
        self.clock = clock

    @retry_on_db_lock()
    def charge(
        self,
        user_email: str,
        tokens: int,
        status: SubscriptionStatus | None = None,
    ) -> ChargeResult:
        """
        Add tokens to today's usage row, then evaluate the quota

        The increment is a single upsert, so concurrent charges for the same
        user and day are never lost. Tokens are recorded even when the result
        is QuotaExceeded: the classifier call already happened. A zero-token
        charge still creates the day's row at 0.

        Raises:
            ValueError: If tokens is negative
        """
        if tokens < 0:
            raise ValueError(f"Token cost must be non-negative, got {tokens}")

        now = self.clock()
        today = now.date()
        now_ts = to_db_ts(now)

        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO user_token_usage_stat
                    (date, month, year, tokens_consumed, user_email, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(date, user_email)
                DO UPDATE SET
                    tokens_consumed = tokens_consumed + excluded.tokens_consumed,
                    updated_at = excluded.updated_at
                """,
                (today.isoformat(), today.month, today.year, tokens, user_email, now_ts, now_ts),
            )
            if status is None:
                status = self._lookup_status(conn, user_email)
            month_total, day_total = self._totals(conn, user_email, today)

        counter("meter.tokens_charged", tokens)
        result = self._evaluate(status, month_total, day_total)
        if isinstance(result, QuotaExceeded):
            counter("meter.quota_exceeded")
            log_event(
                "meter.quota_exceeded",
                user=mask_email(user_email),
                month_total=month_total,
                month_limit=result.month_limit,
                reason=result.reason,
            )
        return result

    def check(self, user_email: str, status: SubscriptionStatus | None = None) -> ChargeResult:
        """Evaluate the quota without charging. The engine calls this before classifying."""
        today = self.clock().date()
        with get_db_connection() as conn:
            if status is None:
                status = self._lookup_status(conn, user_email)
            month_total, day_total = self._totals(conn, user_email, today)
        return self._evaluate(status, month_total, day_total)

    def require_quota(self, user_email: str, status: SubscriptionStatus | None = None) -> Ok:
        """
        Like check(), for callers that must not proceed once the quota is spent

        Raises:
            QuotaExceededError: If the month total or today's total has reached its limit
        """
        result = self.check(user_email, status)
        if isinstance(result, QuotaExceeded):
            raise QuotaExceededError(user_email, result.reason)
        return result

    def usage_today(self, user_email: str) -> int:
        today = self.clock().date()
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(tokens_consumed), 0) FROM user_token_usage_stat
                WHERE user_email = ? AND date = ?
                """,
                (user_email, today.isoformat()),
            ).fetchone()
        return row[0]

    def usage_for_period(self, user_email: str, month: int, year: int) -> int:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(tokens_consumed), 0) FROM user_token_usage_stat
                WHERE user_email = ? AND month = ? AND year = ?
                """,
                (user_email, month, year),
            ).fetchone()
        return row[0]

    def daily_usage_report(self, for_date: date | None = None) -> dict[str, Any]:
        """
        Usage across all users for one day

        Returns:
            Dict with date, total tokens, unique users and per-user totals
        """
        report_date = (for_date or self.clock().date()).isoformat()

        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT user_email, tokens_consumed FROM user_token_usage_stat
                WHERE date = ?
                ORDER BY tokens_consumed DESC
                """,
                (report_date,),
            ).fetchall()

        by_user = {row["user_email"]: row["tokens_consumed"] for row in rows}
        return {
            "date": report_date,
            "total_tokens": sum(by_user.values()),
            "unique_users": len(by_user),
            "by_user": by_user,
            "limits": {
                "monthly": {status.value: limit for status, limit in self.quota_table.monthly.items()},
                "daily_cap": self.quota_table.daily_cap,
            },
        }

    def _evaluate(self, status: SubscriptionStatus, month_total: int, day_total: int) -> ChargeResult:
        limit = self.quota_table.monthly_limit(status)
        if month_total >= limit:
            return QuotaExceeded(
                month_total,
                limit,
                day_total,
                f"Monthly quota exceeded for {status.value} ({month_total}/{limit})",
            )

        cap = self.quota_table.daily_cap
        if cap and day_total >= cap:
            return QuotaExceeded(
                month_total, limit, day_total, f"Daily cap exceeded ({day_total}/{cap})"
            )

        return Ok(month_total, limit, day_total)

    @staticmethod
    def _totals(conn: Any, user_email: str, today: date) -> tuple[int, int]:
        row = conn.execute(
            """
            SELECT
                COALESCE(SUM(tokens_consumed), 0),
                COALESCE(SUM(CASE WHEN date = ? THEN tokens_consumed ELSE 0 END), 0)
            FROM user_token_usage_stat
            WHERE user_email = ? AND month = ? AND year = ?
            """,
            (today.isoformat(), user_email, today.month, today.year),
        ).fetchone()
        return row[0], row[1]

    @staticmethod
    def _lookup_status(conn: Any, user_email: str) -> SubscriptionStatus:
        row = conn.execute(
            "SELECT subscription_status FROM user WHERE email = ?", (user_email,)
        ).fetchone()
        if row is None:
            logger.warning("No user row for %s; metering as UNPAID", mask_email(user_email))
            return SubscriptionStatus.UNPAID
        return SubscriptionStatus(row["subscription_status"])
