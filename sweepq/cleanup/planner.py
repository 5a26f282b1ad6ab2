"""
Cleanup action planner.

plan() is the pure decision. claim() and act() wrap it in the ledger's
claim-before-act discipline; the engine claims before classifying so only
the claim holder pays for classification. apply() does both steps:

    claim -> (classify) -> mailbox mutation -> commit     (success)
                                            -> release    (mutation raised)
                                   commit finds claim taken over -> lost_claim

sweep() revisits committed messages whose policy or age now calls for a
stronger action. Reconciliation only moves forward (leave -> archive ->
delete) and applies just the missing effect, so a message is never archived
twice and never brought back to the inbox.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sweepq.classification.categories import INBOX_LABEL, TRASH_LABEL, label_for
from sweepq.classification.resolver import RuleResolver
from sweepq.contracts.collaborators import InboundMessage, MailboxClient
from sweepq.observability.logging import get_logger
from sweepq.observability.telemetry import counter, log_event
from sweepq.storage.ledger import (
    AlreadyProcessed,
    Claimed,
    ClaimResult,
    IdempotencyLedger,
    LedgerOutcome,
)
from sweepq.storage.models import CleanupAction, ProcessedEmail
from sweepq.utils.time import age_in_days, utcnow

logger = get_logger(__name__)


class Action(str, Enum):
    DELETE = "Delete"
    ARCHIVE = "Archive"
    NO_ACTION = "NoAction"

    @property
    def cleanup_action(self) -> CleanupAction:
        return _TO_CLEANUP[self]

    @classmethod
    def from_cleanup(cls, action: CleanupAction | None) -> Action:
        if action is None:
            return cls.NO_ACTION
        return _FROM_CLEANUP[action]


_TO_CLEANUP = {
    Action.DELETE: CleanupAction.DELETE,
    Action.ARCHIVE: CleanupAction.ARCHIVE,
    Action.NO_ACTION: CleanupAction.NOTHING,
}
_FROM_CLEANUP = {value: key for key, value in _TO_CLEANUP.items()}
_STRENGTH = {Action.NO_ACTION: 0, Action.ARCHIVE: 1, Action.DELETE: 2}


class ApplyStatus(str, Enum):
    COMMITTED = "committed"
    ALREADY_PROCESSED = "already_processed"
    FAILED = "failed"
    LOST_CLAIM = "lost_claim"


@dataclass(frozen=True)
class ApplyResult:
    message_id: str
    status: ApplyStatus
    action: Action
    category: str = ""
    error: str | None = None


class CleanupPlanner:
    def __init__(
        self,
        resolver: RuleResolver,
        ledger: IdempotencyLedger,
        mailbox: MailboxClient,
    ) -> None:
        self.resolver = resolver
        self.ledger = ledger
        self.mailbox = mailbox

    def plan(self, user_id: int, message_id: str, category: str, age_days: int) -> Action:
        """Decide the action for one message. No side effects."""
        policy = self.resolver.resolve_policy(user_id, category)

        if policy.is_disabled:
            return Action.NO_ACTION
        if age_days < policy.after_days_old:
            return Action.NO_ACTION

        action = Action.from_cleanup(policy.cleanup_action)
        logger.debug(
            "Planned %s for %s (user=%s category=%s age=%dd)",
            action.value,
            message_id,
            user_id,
            category,
            age_days,
        )
        return action

    def claim(
        self, user_id: int, message: InboundMessage, now: datetime | None = None
    ) -> ClaimResult:
        """Reserve a message before any classifier or mailbox call is made for it."""
        return self.ledger.try_claim(
            message.id, user_id, received_at=message.received_at, now=now or utcnow()
        )

    def apply(
        self,
        user_id: int,
        message: InboundMessage,
        category: str,
        ai_answer: str = "",
        now: datetime | None = None,
    ) -> ApplyResult:
        """Claim, then act on one classified message."""
        now = now or utcnow()
        claim = self.claim(user_id, message, now)
        if isinstance(claim, AlreadyProcessed):
            return ApplyResult(
                message.id,
                ApplyStatus.ALREADY_PROCESSED,
                Action.from_cleanup(claim.record.action),
                claim.record.category,
            )
        return self.act(claim, message, category, ai_answer=ai_answer, now=now)

    def act(
        self,
        claim: Claimed,
        message: InboundMessage,
        category: str,
        ai_answer: str = "",
        now: datetime | None = None,
    ) -> ApplyResult:
        """
        Mutate the mailbox for a message this caller has claimed, then record it

        Side Effects:
            - Calls the mailbox collaborator while holding the claim
            - Commits the ledger row, or releases it if the mailbox call raised
        """
        now = now or utcnow()
        action = self.plan(claim.user_id, message.id, category, age_in_days(message.received_at, now))

        added, removed = _effect(category, action)
        try:
            self.mailbox.apply_labels(message.id, [label_for(category)], [])
            self._mutate(message.id, action)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning("Mailbox update failed for %s: %s", message.id, error)
            counter("planner.mailbox_failed")
            self.ledger.release(message.id, error, attempt=claim.attempts)
            return ApplyResult(message.id, ApplyStatus.FAILED, action, category, error)

        committed = self.ledger.commit(
            message.id,
            LedgerOutcome(
                category=category,
                action=action.cleanup_action,
                ai_answer=ai_answer,
                labels_applied=added,
                labels_removed=removed,
            ),
            processed_at=now,
            attempt=claim.attempts,
        )
        if not committed:
            counter("planner.lost_claim")
            logger.warning(
                "Claim on %s (attempt %d) was taken over before commit; outcome not recorded",
                message.id,
                claim.attempts,
            )
            return ApplyResult(message.id, ApplyStatus.LOST_CLAIM, action, category)

        counter(f"planner.action.{action.cleanup_action.value.lower()}")
        return ApplyResult(message.id, ApplyStatus.COMMITTED, action, category)

    def reconcile(self, record: ProcessedEmail, now: datetime | None = None) -> bool:
        """
        Apply a stronger action to an already committed message if its policy now calls for one

        Returns:
            True if a correcting mailbox operation was applied and recorded
        """
        if record.received_at is None:
            return False

        now = now or utcnow()
        previous = Action.from_cleanup(record.action)
        desired = self.plan(
            record.user_id, record.id, record.category, age_in_days(record.received_at, now)
        )
        if _STRENGTH[desired] <= _STRENGTH[previous]:
            return False

        if not self.ledger.begin_reconcile(record.id, now=now):
            return False

        target_added, target_removed = _effect(record.category, desired)
        missing_add = [label for label in target_added if label not in record.labels_applied]
        try:
            category_label = label_for(record.category)
            if category_label in missing_add:
                self.mailbox.apply_labels(record.id, [category_label], [])
            self._mutate(record.id, desired)
        except Exception as e:
            logger.warning(
                "Reconciliation of %s (%s -> %s) failed: %s",
                record.id,
                previous.value,
                desired.value,
                e,
            )
            counter("planner.reconcile_failed")
            self.ledger.finish_reconcile(record.id, None)
            return False

        self.ledger.finish_reconcile(
            record.id,
            LedgerOutcome(
                category=record.category,
                action=desired.cleanup_action,
                ai_answer=record.ai_answer,
                labels_applied=_merge(record.labels_applied, target_added),
                labels_removed=_merge(record.labels_removed, target_removed),
            ),
        )
        log_event(
            "planner.reconciled",
            message_id=record.id,
            user_id=record.user_id,
            previous=previous.value,
            action=desired.value,
        )
        return True

    def sweep(self, user_id: int, now: datetime | None = None) -> int:
        """Reconcile every committed, not-yet-deleted message of a user. Returns the count changed."""
        now = now or utcnow()
        changed = 0
        for record in self.ledger.list_reconcilable(user_id):
            if self.reconcile(record, now=now):
                changed += 1
        if changed:
            logger.info("Cleanup sweep updated %d messages for user %s", changed, user_id)
        return changed

    def _mutate(self, message_id: str, action: Action) -> None:
        if action is Action.ARCHIVE:
            self.mailbox.archive(message_id)
        elif action is Action.DELETE:
            self.mailbox.delete(message_id)


def _effect(category: str, action: Action) -> tuple[list[str], list[str]]:
    """Net labels added and removed by processing a message with this action."""
    added = [label_for(category)]
    removed: list[str] = []
    if action is Action.ARCHIVE:
        removed.append(INBOX_LABEL)
    elif action is Action.DELETE:
        added.append(TRASH_LABEL)
        removed.append(INBOX_LABEL)
    return added, removed


def _merge(existing: list[str], extra: list[str]) -> list[str]:
    merged = list(existing)
    for label in extra:
        if label not in merged:
            merged.append(label)
    return merged
