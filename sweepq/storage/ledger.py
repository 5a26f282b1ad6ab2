"""
Idempotency ledger over processed_email.

Each provider message id gets exactly one row, owned by one user. The row
moves through:

    claimed -> committed            mailbox mutation succeeded
    claimed -> released             mutation failed; a later run may reclaim
    committed -> reconciling -> committed   policy changed, delta applied

Claims are won by single-statement conditional writes (INSERT ... ON
CONFLICT DO NOTHING, UPDATE ... WHERE status = ...) and the affected row
count. No in-process lock is taken, and none is held across a mailbox call.

A claim that is never committed or released (worker died mid-call) becomes
reclaimable once it is older than CLAIM_LEASE_SECONDS.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sweepq.config import CLAIM_LEASE_SECONDS
from sweepq.observability.logging import get_logger
from sweepq.observability.telemetry import counter
from sweepq.storage import BaseRepository
from sweepq.storage.models import CleanupAction, LedgerStatus, ProcessedEmail
from sweepq.utils.time import to_db_ts, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class Claimed:
    message_id: str
    user_id: int
    attempts: int = 1


@dataclass(frozen=True)
class AlreadyProcessed:
    record: ProcessedEmail


ClaimResult = Claimed | AlreadyProcessed


@dataclass(frozen=True)
class LedgerOutcome:
    """Net effect of processing one message, recorded on commit."""

    category: str
    action: CleanupAction
    ai_answer: str = ""
    labels_applied: list[str] = field(default_factory=list)
    labels_removed: list[str] = field(default_factory=list)


class IdempotencyLedger(BaseRepository):
    def __init__(self, lease_seconds: int = CLAIM_LEASE_SECONDS) -> None:
        super().__init__("processed_email")
        self.lease = timedelta(seconds=lease_seconds)

    def try_claim(
        self,
        message_id: str,
        user_id: int,
        received_at: datetime | None = None,
        now: datetime | None = None,
    ) -> ClaimResult:
        """
        Atomically reserve a message id for one user

        Exactly one of any number of concurrent callers gets Claimed; the rest
        get AlreadyProcessed with the current row. A released row, or a claim
        older than the lease, may be taken over.
        """
        now = now or utcnow()
        now_ts = to_db_ts(now)
        received_ts = to_db_ts(received_at) if received_at else None

        inserted = self.execute(
            """
            INSERT INTO processed_email (id, user_id, status, claimed_at, received_at, attempts)
            VALUES (?, ?, 'claimed', ?, ?, 1)
            ON CONFLICT(id) DO NOTHING
            """,
            (message_id, user_id, now_ts, received_ts),
        )
        if inserted:
            counter("ledger.claimed")
            logger.debug("Claimed message %s for user %s", message_id, user_id)
            return Claimed(message_id, user_id)

        stale_before = to_db_ts(now - self.lease)
        reclaimed = self.execute(
            """
            UPDATE processed_email
            SET status = 'claimed',
                claimed_at = ?,
                received_at = COALESCE(?, received_at),
                attempts = attempts + 1,
                error = NULL
            WHERE id = ?
              AND user_id = ?
              AND (status = 'released' OR (status = 'claimed' AND claimed_at < ?))
            """,
            (now_ts, received_ts, message_id, user_id, stale_before),
        )
        record = self.get(message_id)
        if record is None:
            # Row vanished between statements (owning user deleted); nothing to process
            counter("ledger.claim_row_vanished")
            logger.warning("Ledger row for %s disappeared during claim", message_id)
            return AlreadyProcessed(
                ProcessedEmail(
                    id=message_id,
                    user_id=user_id,
                    status=LedgerStatus.RELEASED,
                    claimed_at=now,
                )
            )

        if reclaimed:
            counter("ledger.reclaimed")
            logger.info(
                "Reclaimed message %s for user %s (attempt %d)",
                message_id,
                user_id,
                record.attempts,
            )
            return Claimed(message_id, user_id, attempts=record.attempts)

        if record.user_id != user_id:
            counter("ledger.foreign_owner")
            logger.warning(
                "Message %s already owned by user %s, not %s",
                message_id,
                record.user_id,
                user_id,
            )
        counter("ledger.already_processed")
        return AlreadyProcessed(record)

    def commit(
        self,
        message_id: str,
        outcome: LedgerOutcome,
        processed_at: datetime | None = None,
        attempt: int | None = None,
    ) -> bool:
        """
        Record a successful outcome for a claimed message

        Args:
            attempt: The claim's attempt number; when given, only that claim may commit

        Returns:
            False if the claim was lost (lease expired and taken over)
        """
        updated = self.execute(
            """
            UPDATE processed_email
            SET status = 'committed',
                processed_at = ?,
                labels_applied = ?,
                labels_removed = ?,
                ai_answer = ?,
                category = ?,
                action = ?,
                error = NULL
            WHERE id = ? AND status = 'claimed' AND (? IS NULL OR attempts = ?)
            """,
            (
                to_db_ts(processed_at or utcnow()),
                json.dumps(outcome.labels_applied),
                json.dumps(outcome.labels_removed),
                outcome.ai_answer,
                outcome.category,
                outcome.action.value,
                message_id,
                attempt,
                attempt,
            ),
        )
        if not updated:
            counter("ledger.commit_lost_claim")
            logger.warning("Commit for %s found no active claim", message_id)
            return False

        counter("ledger.committed")
        return True

    def release(self, message_id: str, error: str, attempt: int | None = None) -> bool:
        """Give up a claim after a failed external call so a later run can retry."""
        updated = self.execute(
            """
            UPDATE processed_email
            SET status = 'released', error = ?
            WHERE id = ? AND status = 'claimed' AND (? IS NULL OR attempts = ?)
            """,
            (error[:500], message_id, attempt, attempt),
        )
        if updated:
            counter("ledger.released")
            logger.info("Released claim on %s: %s", message_id, error)
        return updated > 0

    def begin_reconcile(self, message_id: str, now: datetime | None = None) -> bool:
        """
        Take an exclusive reconciliation claim on a committed row

        Returns:
            True if this caller may apply a correcting operation
        """
        now = now or utcnow()
        updated = self.execute(
            """
            UPDATE processed_email
            SET status = 'reconciling', claimed_at = ?
            WHERE id = ?
              AND (status = 'committed' OR (status = 'reconciling' AND claimed_at < ?))
            """,
            (to_db_ts(now), message_id, to_db_ts(now - self.lease)),
        )
        return updated > 0

    def finish_reconcile(
        self,
        message_id: str,
        outcome: LedgerOutcome | None,
    ) -> None:
        """
        Return a reconciling row to committed

        With an outcome, the row's labels and action are replaced by the new
        net effect; with None (correction failed) the previous record stands.
        processed_at is kept so digests count the message once.
        """
        if outcome is None:
            self.execute(
                """
                UPDATE processed_email SET status = 'committed'
                WHERE id = ? AND status = 'reconciling'
                """,
                (message_id,),
            )
            return

        self.execute(
            """
            UPDATE processed_email
            SET status = 'committed',
                labels_applied = ?,
                labels_removed = ?,
                action = ?
            WHERE id = ? AND status = 'reconciling'
            """,
            (
                json.dumps(outcome.labels_applied),
                json.dumps(outcome.labels_removed),
                outcome.action.value,
                message_id,
            ),
        )
        counter("ledger.reconciled")

    def get(self, message_id: str) -> ProcessedEmail | None:
        row = self.query_one("SELECT * FROM processed_email WHERE id = ?", (message_id,))
        return ProcessedEmail.from_db_row(row) if row else None

    def is_committed(self, message_id: str) -> bool:
        row = self.query_one(
            "SELECT status FROM processed_email WHERE id = ?", (message_id,)
        )
        return row is not None and row["status"] in (
            LedgerStatus.COMMITTED.value,
            LedgerStatus.RECONCILING.value,
        )

    def list_reconcilable(self, user_id: int) -> list[ProcessedEmail]:
        """Committed rows that a later policy could still act on (not deleted)."""
        rows = self.query_all(
            """
            SELECT * FROM processed_email
            WHERE user_id = ?
              AND status = 'committed'
              AND received_at IS NOT NULL
              AND (action IS NULL OR action != 'DELETE')
            ORDER BY received_at
            """,
            (user_id,),
        )
        return [ProcessedEmail.from_db_row(row) for row in rows]

    def category_counts_since(self, user_id: int, since: datetime) -> dict[str, int]:
        rows = self.query_all(
            """
            SELECT category, COUNT(*) AS n FROM processed_email
            WHERE user_id = ?
              AND status IN ('committed', 'reconciling')
              AND processed_at >= ?
            GROUP BY category
            ORDER BY category
            """,
            (user_id, to_db_ts(since)),
        )
        return {row["category"]: row["n"] for row in rows}
