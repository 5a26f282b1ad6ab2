"""
Daily summary scheduling.

A user's digest is due once per local calendar day, after the configured
local wall-clock time. Local time is derived from the user's fixed UTC
offset ("-08" is eight hours behind UTC).

Firing follows the same claim-before-commit discipline as the ledger: the
(user, date) row is claimed first, the delivery collaborator is called
without holding any lock, and the claim becomes `sent` only after delivery
succeeds. On failure the claim is dropped so the next run retries.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from enum import Enum

from sweepq.config import DIGEST_LOOKBACK_HOURS
from sweepq.contracts.collaborators import DigestSender
from sweepq.observability.logging import get_logger
from sweepq.observability.telemetry import counter, log_event
from sweepq.storage.ledger import IdempotencyLedger
from sweepq.storage.models import DigestContent, User
from sweepq.storage.summary_repository import DailySummaryRepository
from sweepq.storage.user_repository import UserRepository, UserSettingsRepository
from sweepq.utils.time import ensure_aware, parse_utc_offset, parse_wall_clock

logger = get_logger(__name__)


class DigestOutcome(str, Enum):
    NOT_DUE = "not_due"
    SENT = "sent"
    SKIPPED = "skipped"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"


class DailySummaryScheduler:
    def __init__(
        self,
        sender: DigestSender,
        ledger: IdempotencyLedger | None = None,
        users: UserRepository | None = None,
        settings: UserSettingsRepository | None = None,
        summaries: DailySummaryRepository | None = None,
        lookback_hours: int = DIGEST_LOOKBACK_HOURS,
    ) -> None:
        self.sender = sender
        self.ledger = ledger or IdempotencyLedger()
        self.users = users or UserRepository()
        self.settings = settings or UserSettingsRepository()
        self.summaries = summaries or DailySummaryRepository()
        self.lookback = timedelta(hours=lookback_hours)

    def is_due(self, user_id: int, now_utc: datetime) -> bool:
        user = self.users.get(user_id)
        if user is None:
            return False
        return self._due_date(user, now_utc) is not None

    def build_content(self, user: User, local_date: date, now_utc: datetime) -> DigestContent:
        """Category counts of messages committed in the lookback window before now."""
        counts = self.ledger.category_counts_since(user.id, ensure_aware(now_utc) - self.lookback)
        return DigestContent(
            user_id=user.id,
            user_email=user.email,
            local_date=local_date,
            category_counts=counts,
        )

    def run_for_user(self, user: User, now_utc: datetime) -> DigestOutcome:
        """
        Send today's digest if due

        Side Effects:
            - Claims, then marks sent/skipped (or drops) the processed_daily_summary row
            - Calls the digest delivery collaborator at most once per successful claim
        """
        local_date = self._due_date(user, now_utc)
        if local_date is None:
            return DigestOutcome.NOT_DUE

        if not self.summaries.try_claim(user.id, local_date, now=now_utc):
            return DigestOutcome.IN_PROGRESS

        content = self.build_content(user, local_date, now_utc)
        if content.total == 0:
            self.summaries.mark_skipped(user.id, local_date)
            counter("digest.skipped_empty")
            logger.info("No processed email for user %s on %s; digest skipped", user.id, local_date)
            return DigestOutcome.SKIPPED

        try:
            self.sender.send(user.id, content)
        except Exception as e:
            logger.warning("Digest delivery failed for user %s: %s", user.id, e)
            counter("digest.send_failed")
            self.summaries.release(user.id, local_date)
            return DigestOutcome.FAILED

        self.summaries.mark_sent(user.id, local_date, content.total)
        counter("digest.sent")
        log_event("digest.sent", user_id=user.id, date=local_date.isoformat(), emails=content.total)
        return DigestOutcome.SENT

    def _due_date(self, user: User, now_utc: datetime) -> date | None:
        settings = self.settings.get(user.email)
        if not settings.daily_summary_enabled:
            return None

        local_now = ensure_aware(now_utc).astimezone(parse_utc_offset(settings.time_zone_offset))
        if local_now.time() < parse_wall_clock(settings.daily_summary_time):
            return None

        # A stale claim does not count; try_claim takes it over
        if self.summaries.is_handled(user.id, local_now.date(), now=now_utc):
            return None
        return local_now.date()
