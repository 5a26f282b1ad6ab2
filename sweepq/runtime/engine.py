"""
Cleanup engine: one cycle over all users.

Per user:
1. Credentials: a user needing reauthentication is skipped entirely
   (no quota, policy, cleanup or digest work). A transient refresh failure
   skips mailbox work this cycle but still lets the digest run.
2. For each fetched message: skip if already committed, check quota, claim
   it in the ledger, classify, charge the classifier's token cost, map
   low-confidence answers to UNKNOWN, record training data if enabled, then
   let the planner act on the claim.
   Once the quota is spent no further messages are classified this cycle.
3. Sweep committed messages for actions that are now due (runs even when
   the quota is spent; it never calls the classifier).
4. Stamp last_sync, then run the daily summary.

Failures are isolated: a failing message is released for retry, a failing
user is logged, and run_cycle itself never raises.
"""

from __future__ import annotations

import concurrent.futures
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from sweepq.classification.categories import UNKNOWN
from sweepq.classification.resolver import RuleResolver
from sweepq.cleanup.planner import ApplyStatus, CleanupPlanner
from sweepq.config import (
    CLASSIFIER_CONFIDENCE_THRESHOLD,
    ENGINE_MESSAGE_WORKERS,
    ENGINE_USER_WORKERS,
    TRAINING_MODE,
)
from sweepq.contracts.collaborators import (
    Classifier,
    CredentialExchange,
    DigestSender,
    InboundMessage,
    MailboxClient,
    MessageSource,
)
from sweepq.contracts.errors import (
    ExternalCallFailedError,
    NeedsReauthenticationError,
    QuotaExceededError,
)
from sweepq.digest.scheduler import DailySummaryScheduler, DigestOutcome
from sweepq.infrastructure.token_lifecycle import TokenLifecycle
from sweepq.infrastructure.token_meter import QuotaExceeded, TokenUsageMeter
from sweepq.observability.logging import get_logger, get_user_logger
from sweepq.observability.telemetry import counter, log_event, time_block
from sweepq.storage.ledger import AlreadyProcessed, IdempotencyLedger
from sweepq.storage.models import EmailTraining, User
from sweepq.storage.training_repository import TrainingRepository
from sweepq.storage.user_repository import UserRepository
from sweepq.utils.time import utcnow

logger = get_logger(__name__)


class MessageStatus(str, Enum):
    COMMITTED = "committed"
    ALREADY_PROCESSED = "already_processed"
    QUOTA_EXCEEDED = "quota_exceeded"
    FAILED = "failed"


@dataclass(frozen=True)
class MessageOutcome:
    status: MessageStatus
    quota_exhausted: bool = False


@dataclass
class UserCycleReport:
    user_id: int
    skipped_reason: str | None = None
    committed: int = 0
    already_processed: int = 0
    failed: int = 0
    quota_exceeded: bool = False
    swept: int = 0
    digest: DigestOutcome | None = None
    error: str | None = None


@dataclass
class CycleReport:
    started_at: datetime
    users: list[UserCycleReport] = field(default_factory=list)

    @property
    def committed(self) -> int:
        return sum(report.committed for report in self.users)

    @property
    def failed_users(self) -> int:
        return sum(1 for report in self.users if report.error)


class CleanupEngine:
    def __init__(
        self,
        classifier: Classifier,
        source: MessageSource,
        mailbox: MailboxClient,
        exchange: CredentialExchange,
        sender: DigestSender,
        meter: TokenUsageMeter | None = None,
        resolver: RuleResolver | None = None,
        ledger: IdempotencyLedger | None = None,
        users: UserRepository | None = None,
        training: TrainingRepository | None = None,
        tokens: TokenLifecycle | None = None,
        confidence_threshold: float = CLASSIFIER_CONFIDENCE_THRESHOLD,
        training_mode: bool = TRAINING_MODE,
        user_workers: int = ENGINE_USER_WORKERS,
        message_workers: int = ENGINE_MESSAGE_WORKERS,
    ) -> None:
        self.classifier = classifier
        self.source = source
        self.meter = meter or TokenUsageMeter()
        self.resolver = resolver or RuleResolver()
        self.ledger = ledger or IdempotencyLedger()
        self.users = users or UserRepository()
        self.training = training or TrainingRepository()
        self.tokens = tokens or TokenLifecycle(exchange)
        self.planner = CleanupPlanner(self.resolver, self.ledger, mailbox)
        self.scheduler = DailySummaryScheduler(sender, ledger=self.ledger, users=self.users)
        self.confidence_threshold = confidence_threshold
        self.training_mode = training_mode
        self.user_workers = max(1, user_workers)
        self.message_workers = max(1, message_workers)

    def run_cycle(self, now: datetime | None = None) -> CycleReport:
        """Process every user once. Never raises."""
        now = now or utcnow()
        report = CycleReport(started_at=now)

        try:
            users = self.users.list_all()
        except Exception:
            logger.exception("Could not list users; cycle aborted")
            counter("engine.cycle_failed")
            return report

        with time_block("engine.cycle"):
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.user_workers) as executor:
                future_to_user = {executor.submit(self.run_user, user, now): user for user in users}

                for future in concurrent.futures.as_completed(future_to_user):
                    user = future_to_user[future]
                    try:
                        report.users.append(future.result())
                    except Exception as exc:
                        logger.exception("Unhandled failure for user %s", user.id)
                        report.users.append(UserCycleReport(user.id, error=str(exc)))

        report.users.sort(key=lambda r: r.user_id)
        log_event(
            "engine.cycle_completed",
            users=len(report.users),
            committed=report.committed,
            failed_users=report.failed_users,
        )
        return report

    def run_user(self, user: User, now: datetime) -> UserCycleReport:
        report = UserCycleReport(user.id)
        user_log = get_user_logger(__name__, str(user.id))

        access_token: str | None = None
        try:
            access_token = self.tokens.require_access_token(user.email)
        except NeedsReauthenticationError:
            counter("engine.user_skipped_reauth")
            user_log.info("Skipped: needs reauthentication")
            report.skipped_reason = "needs_reauthentication"
            return report
        except ExternalCallFailedError as e:
            user_log.info("Cleanup deferred: %s", e)
            report.skipped_reason = "token_refresh_pending"
        except Exception as e:
            user_log.exception("Credential check failed")
            report.error = str(e)
            return report

        if access_token is not None:
            try:
                self._run_cleanup(user, access_token, now, report)
                self.users.update_last_sync(user.id, now)
            except Exception as e:
                user_log.exception("Cleanup failed")
                counter("engine.user_failed")
                report.error = str(e)

        try:
            report.digest = self.scheduler.run_for_user(user, now)
        except Exception as e:
            user_log.exception("Daily summary failed")
            counter("engine.digest_failed")
            report.error = report.error or str(e)

        return report

    def process_message(self, user: User, message: InboundMessage, now: datetime) -> MessageOutcome:
        """
        Claim, classify, meter and act on one message

        Only the claim holder calls the classifier, so each message is charged
        once however many workers see it. A message whose charge spends the
        quota is still acted on; the outcome reports quota_exhausted so the
        caller stops classifying.

        Raises:
            ExternalCallFailedError: If the classifier call fails (the claim is released)
        """
        if self.ledger.is_committed(message.id):
            return MessageOutcome(MessageStatus.ALREADY_PROCESSED)

        try:
            self.meter.require_quota(user.email, user.subscription_status)
        except QuotaExceededError:
            return MessageOutcome(MessageStatus.QUOTA_EXCEEDED, quota_exhausted=True)

        claim = self.planner.claim(user.id, message, now)
        if isinstance(claim, AlreadyProcessed):
            return MessageOutcome(MessageStatus.ALREADY_PROCESSED)

        try:
            result = self.classifier.classify(message)
        except Exception as e:
            self.ledger.release(message.id, f"classify: {e}", attempt=claim.attempts)
            raise ExternalCallFailedError("classify", e) from e

        try:
            charge = self.meter.charge(user.email, result.token_cost, user.subscription_status)
            category = result.category
            if result.confidence < self.confidence_threshold:
                counter("engine.low_confidence")
                category = UNKNOWN

            if self.training_mode:
                self.training.upsert(
                    EmailTraining(
                        user_email=user.email,
                        email_id=message.id,
                        from_address=message.sender,
                        subject=message.subject,
                        body=message.body,
                        ai_answer=result.category,
                        confidence=result.confidence,
                        heuristics_used=result.used_heuristics,
                    )
                )
        except Exception as e:
            self.ledger.release(message.id, f"{type(e).__name__}: {e}", attempt=claim.attempts)
            raise

        applied = self.planner.act(claim, message, category, ai_answer=result.category, now=now)
        status = {
            ApplyStatus.COMMITTED: MessageStatus.COMMITTED,
            ApplyStatus.ALREADY_PROCESSED: MessageStatus.ALREADY_PROCESSED,
            ApplyStatus.LOST_CLAIM: MessageStatus.ALREADY_PROCESSED,
            ApplyStatus.FAILED: MessageStatus.FAILED,
        }[applied.status]

        return MessageOutcome(status, quota_exhausted=isinstance(charge, QuotaExceeded))

    def _run_cleanup(self, user: User, access_token: str, now: datetime, report: UserCycleReport) -> None:
        try:
            messages = self.source.fetch_messages(user.email, access_token)
        except Exception as e:
            raise ExternalCallFailedError("fetch_messages", e) from e

        quota_spent = threading.Event()

        def handle(message: InboundMessage) -> MessageStatus:
            if quota_spent.is_set():
                return MessageStatus.QUOTA_EXCEEDED
            try:
                outcome = self.process_message(user, message, now)
            except Exception:
                logger.exception("Message %s failed for user %s", message.id, user.id)
                counter("engine.message_failed")
                return MessageStatus.FAILED
            if outcome.quota_exhausted:
                quota_spent.set()
            return outcome.status

        if self.message_workers == 1:
            statuses = [handle(message) for message in messages]
        else:
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.message_workers) as executor:
                statuses = list(executor.map(handle, messages))

        for status in statuses:
            if status is MessageStatus.COMMITTED:
                report.committed += 1
            elif status is MessageStatus.ALREADY_PROCESSED:
                report.already_processed += 1
            elif status is MessageStatus.FAILED:
                report.failed += 1
        report.quota_exceeded = quota_spent.is_set()
        if report.quota_exceeded:
            counter("engine.quota_halted")
            logger.info("Quota spent for user %s; classification halted this cycle", user.id)

        report.swept = self.planner.sweep(user.id, now)
