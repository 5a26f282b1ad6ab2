"""
Tests for the idempotency ledger state machine
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import NOW

from sweepq.observability.telemetry import get_counter
from sweepq.storage.ledger import AlreadyProcessed, Claimed, IdempotencyLedger, LedgerOutcome
from sweepq.storage.models import CleanupAction, LedgerStatus

ARCHIVED = LedgerOutcome(
    category="PROMOTIONS",
    action=CleanupAction.ARCHIVE,
    ai_answer="PROMOTIONS",
    labels_applied=["sweepq/PROMOTIONS"],
    labels_removed=["INBOX"],
)


@pytest.fixture
def ledger(sweepq_db):
    return IdempotencyLedger(lease_seconds=900)


@pytest.fixture
def user(users):
    return users.create("ana@example.com")


class TestClaim:
    def test_first_claim_wins(self, ledger, user):
        assert ledger.try_claim("m-1", user.id, now=NOW) == Claimed("m-1", user.id)

        record = ledger.get("m-1")
        assert record.status is LedgerStatus.CLAIMED
        assert record.attempts == 1

    def test_second_claim_sees_existing_row(self, ledger, user):
        ledger.try_claim("m-1", user.id, now=NOW)

        result = ledger.try_claim("m-1", user.id, now=NOW + timedelta(seconds=1))

        assert isinstance(result, AlreadyProcessed)
        assert result.record.status is LedgerStatus.CLAIMED

    def test_committed_row_is_never_reclaimed(self, ledger, user):
        ledger.try_claim("m-1", user.id, now=NOW)
        ledger.commit("m-1", ARCHIVED, processed_at=NOW)

        result = ledger.try_claim("m-1", user.id, now=NOW + timedelta(days=30))

        assert isinstance(result, AlreadyProcessed)
        assert result.record.action is CleanupAction.ARCHIVE
        assert result.record.labels_applied == ["sweepq/PROMOTIONS"]

    def test_released_row_can_be_reclaimed(self, ledger, user):
        ledger.try_claim("m-1", user.id, now=NOW)
        assert ledger.release("m-1", "RuntimeError: mailbox unavailable")
        assert ledger.get("m-1").error == "RuntimeError: mailbox unavailable"

        result = ledger.try_claim("m-1", user.id, now=NOW + timedelta(minutes=5))

        assert result == Claimed("m-1", user.id, attempts=2)
        record = ledger.get("m-1")
        assert record.status is LedgerStatus.CLAIMED
        assert record.error is None

    def test_stale_claim_is_reclaimed_after_lease(self, ledger, user):
        ledger.try_claim("m-1", user.id, now=NOW)

        early = ledger.try_claim("m-1", user.id, now=NOW + timedelta(seconds=899))
        late = ledger.try_claim("m-1", user.id, now=NOW + timedelta(seconds=901))

        assert isinstance(early, AlreadyProcessed)
        assert isinstance(late, Claimed)
        assert get_counter("ledger.reclaimed") == 1

    def test_message_owned_by_another_user(self, ledger, users, user):
        other = users.create("bo@example.com")
        ledger.try_claim("m-1", user.id, now=NOW)
        ledger.release("m-1", "boom")

        result = ledger.try_claim("m-1", other.id, now=NOW + timedelta(hours=1))

        assert isinstance(result, AlreadyProcessed)
        assert result.record.user_id == user.id
        assert get_counter("ledger.foreign_owner") == 1

    def test_received_at_is_kept(self, ledger, user):
        received = NOW - timedelta(days=3)
        ledger.try_claim("m-1", user.id, received_at=received, now=NOW)

        assert ledger.get("m-1").received_at == received


class TestCommitAndRelease:
    def test_commit_records_outcome(self, ledger, user):
        ledger.try_claim("m-1", user.id, now=NOW)

        assert ledger.commit("m-1", ARCHIVED, processed_at=NOW) is True

        record = ledger.get("m-1")
        assert record.status is LedgerStatus.COMMITTED
        assert record.processed_at == NOW
        assert record.labels_removed == ["INBOX"]
        assert record.ai_answer == "PROMOTIONS"
        assert ledger.is_committed("m-1")

    def test_commit_without_claim_is_rejected(self, ledger, user):
        ledger.try_claim("m-1", user.id, now=NOW)
        ledger.release("m-1", "boom")

        assert ledger.commit("m-1", ARCHIVED) is False
        assert get_counter("ledger.commit_lost_claim") == 1
        assert not ledger.is_committed("m-1")

    def test_superseded_claim_cannot_commit_or_release(self, ledger, user):
        first = ledger.try_claim("m-1", user.id, now=NOW)
        second = ledger.try_claim("m-1", user.id, now=NOW + timedelta(hours=1))

        assert (first.attempts, second.attempts) == (1, 2)
        assert ledger.commit("m-1", ARCHIVED, attempt=first.attempts) is False
        assert ledger.release("m-1", "late", attempt=first.attempts) is False
        assert ledger.commit("m-1", ARCHIVED, attempt=second.attempts) is True

    def test_release_only_affects_active_claims(self, ledger, user):
        ledger.try_claim("m-1", user.id, now=NOW)
        ledger.commit("m-1", ARCHIVED)

        assert ledger.release("m-1", "late failure") is False
        assert ledger.get("m-1").status is LedgerStatus.COMMITTED


class TestReconcile:
    def test_reconcile_claim_is_exclusive(self, ledger, user):
        ledger.try_claim("m-1", user.id, now=NOW)
        ledger.commit("m-1", ARCHIVED, processed_at=NOW)

        assert ledger.begin_reconcile("m-1", now=NOW) is True
        assert ledger.begin_reconcile("m-1", now=NOW + timedelta(seconds=1)) is False
        assert ledger.is_committed("m-1"), "Reconciling rows still count as processed"

    def test_finish_replaces_effect_and_keeps_processed_at(self, ledger, user):
        ledger.try_claim("m-1", user.id, now=NOW)
        ledger.commit("m-1", ARCHIVED, processed_at=NOW)
        ledger.begin_reconcile("m-1", now=NOW + timedelta(days=1))

        ledger.finish_reconcile(
            "m-1",
            LedgerOutcome(
                category="PROMOTIONS",
                action=CleanupAction.DELETE,
                labels_applied=["sweepq/PROMOTIONS", "TRASH"],
                labels_removed=["INBOX"],
            ),
        )

        record = ledger.get("m-1")
        assert record.status is LedgerStatus.COMMITTED
        assert record.action is CleanupAction.DELETE
        assert record.labels_applied == ["sweepq/PROMOTIONS", "TRASH"]
        assert record.processed_at == NOW
        assert record.ai_answer == "PROMOTIONS"

    def test_failed_reconcile_keeps_previous_record(self, ledger, user):
        ledger.try_claim("m-1", user.id, now=NOW)
        ledger.commit("m-1", ARCHIVED, processed_at=NOW)
        ledger.begin_reconcile("m-1", now=NOW)

        ledger.finish_reconcile("m-1", None)

        record = ledger.get("m-1")
        assert record.status is LedgerStatus.COMMITTED
        assert record.action is CleanupAction.ARCHIVE

    def test_list_reconcilable_skips_deleted_and_uncommitted(self, ledger, user):
        received = NOW - timedelta(days=2)
        for message_id, action in [("m-a", CleanupAction.ARCHIVE), ("m-d", CleanupAction.DELETE)]:
            ledger.try_claim(message_id, user.id, received_at=received, now=NOW)
            ledger.commit(
                message_id, LedgerOutcome(category="PROMOTIONS", action=action), processed_at=NOW
            )
        ledger.try_claim("m-c", user.id, received_at=received, now=NOW)

        assert [r.id for r in ledger.list_reconcilable(user.id)] == ["m-a"]


def test_category_counts_since(ledger, user):
    for index, category in enumerate(["PROMOTIONS", "PROMOTIONS", "SOCIAL"]):
        message_id = f"m-{index}"
        ledger.try_claim(message_id, user.id, now=NOW)
        ledger.commit(
            message_id,
            LedgerOutcome(category=category, action=CleanupAction.NOTHING),
            processed_at=NOW - timedelta(hours=index),
        )
    ledger.try_claim("old", user.id, now=NOW)
    ledger.commit(
        "old",
        LedgerOutcome(category="SOCIAL", action=CleanupAction.NOTHING),
        processed_at=NOW - timedelta(days=2),
    )

    counts = ledger.category_counts_since(user.id, NOW - timedelta(hours=24))

    assert counts == {"PROMOTIONS": 2, "SOCIAL": 1}
