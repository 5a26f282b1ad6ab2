"""Daily summary records (processed_daily_summary)

One row per (user, local date). A sent or skipped row means the day is
done; a claimed row means a worker is sending it. A claim that never reached
sent/skipped is deleted on delivery failure, or taken over once it outlives
the lease.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta

from sweepq.config import CLAIM_LEASE_SECONDS
from sweepq.observability.telemetry import counter
from sweepq.storage import BaseRepository
from sweepq.storage.models import ProcessedDailySummary, SummaryStatus
from sweepq.utils.time import to_db_ts, utcnow


class DailySummaryRepository(BaseRepository):
    def __init__(self, lease_seconds: int = CLAIM_LEASE_SECONDS) -> None:
        super().__init__("processed_daily_summary")
        self.lease = timedelta(seconds=lease_seconds)

    def get(self, user_id: int, for_date: date) -> ProcessedDailySummary | None:
        row = self.query_one(
            "SELECT * FROM processed_daily_summary WHERE user_id = ? AND date = ?",
            (user_id, for_date.isoformat()),
        )
        return ProcessedDailySummary.from_db_row(row) if row else None

    def exists(self, user_id: int, for_date: date) -> bool:
        return self.get(user_id, for_date) is not None

    def is_handled(self, user_id: int, for_date: date, now: datetime | None = None) -> bool:
        """True if the day is sent or skipped, or claimed by a worker still inside its lease."""
        stale_before = (now or utcnow()) - self.lease
        row = self.query_one(
            """
            SELECT 1 FROM processed_daily_summary
            WHERE user_id = ? AND date = ?
              AND (status != 'claimed' OR claimed_at >= ?)
            """,
            (user_id, for_date.isoformat(), to_db_ts(stale_before)),
        )
        return row is not None

    def try_claim(self, user_id: int, for_date: date, now: datetime | None = None) -> bool:
        """Reserve (user, date) for sending. True for exactly one caller."""
        now = now or utcnow()
        inserted = self.execute(
            """
            INSERT INTO processed_daily_summary (user_id, date, status, claimed_at)
            VALUES (?, ?, 'claimed', ?)
            ON CONFLICT(user_id, date) DO NOTHING
            """,
            (user_id, for_date.isoformat(), to_db_ts(now)),
        )
        if inserted:
            return True

        reclaimed = self.execute(
            """
            UPDATE processed_daily_summary SET claimed_at = ?
            WHERE user_id = ? AND date = ? AND status = 'claimed' AND claimed_at < ?
            """,
            (to_db_ts(now), user_id, for_date.isoformat(), to_db_ts(now - self.lease)),
        )
        if reclaimed:
            counter("digest.summary_reclaimed")
        return reclaimed > 0

    def mark_sent(self, user_id: int, for_date: date, email_count: int) -> None:
        self._finish(user_id, for_date, SummaryStatus.SENT, email_count)

    def mark_skipped(self, user_id: int, for_date: date) -> None:
        self._finish(user_id, for_date, SummaryStatus.SKIPPED, 0)

    def _finish(
        self, user_id: int, for_date: date, status: SummaryStatus, email_count: int
    ) -> None:
        self.execute(
            """
            UPDATE processed_daily_summary
            SET status = ?, email_count = ?, created_at = ?
            WHERE user_id = ? AND date = ? AND status = 'claimed'
            """,
            (status.value, email_count, to_db_ts(utcnow()), user_id, for_date.isoformat()),
        )

    def release(self, user_id: int, for_date: date) -> None:
        """Drop an unfinished claim so the digest is attempted again."""
        self.execute(
            """
            DELETE FROM processed_daily_summary
            WHERE user_id = ? AND date = ? AND status = 'claimed'
            """,
            (user_id, for_date.isoformat()),
        )
