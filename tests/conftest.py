"""
Pytest configuration for sweepq tests

Provides an isolated SQLite database per test, a Fernet key, and fake
collaborators (classifier, message source, mailbox, credential exchange,
digest sender) that record their calls.
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest
from cryptography.fernet import Fernet

from sweepq.contracts import (
    ClassificationResult,
    InboundMessage,
    RefreshedCredentials,
)
from sweepq.infrastructure.database import init_database, reset_pool
from sweepq.observability.telemetry import reset_counters
from sweepq.storage.account_access_repository import AccountAccessRepository
from sweepq.storage.models import SubscriptionStatus, User
from sweepq.storage.user_repository import UserRepository
from sweepq.utils.time import utcnow

# 14:30 UTC is 06:30 at UTC-8
NOW = datetime(2026, 3, 10, 14, 30, tzinfo=UTC)


@pytest.fixture
def sweepq_db(tmp_path, monkeypatch):
    """Fresh schema in a temporary database; the pool is rebuilt around it"""
    db_path = tmp_path / "sweepq.db"
    monkeypatch.setenv("SWEEPQ_DB_PATH", str(db_path))
    reset_pool()
    init_database()
    reset_counters()
    yield db_path
    reset_pool()


@pytest.fixture
def fernet_key(monkeypatch):
    key = Fernet.generate_key().decode()
    monkeypatch.setenv("SWEEPQ_ENCRYPTION_KEY", key)
    return key


@pytest.fixture
def users(sweepq_db):
    return UserRepository()


@pytest.fixture
def access_repo(sweepq_db, fernet_key):
    return AccountAccessRepository()


@pytest.fixture
def make_user(users, access_repo):
    """Create a user with a linked account whose token is valid for an hour"""
    created = [0]

    def _make(
        email: str | None = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        linked: bool = True,
    ) -> User:
        created[0] += 1
        email = email or f"user{created[0]}@example.com"
        user = users.create(email, status)
        if linked:
            access_repo.link_account(
                email, f"access-{created[0]}", f"refresh-{created[0]}", utcnow() + timedelta(hours=1)
            )
        return user

    return _make


def make_message(message_id: str, age_days: int = 10, now: datetime = NOW) -> InboundMessage:
    return InboundMessage(
        id=message_id,
        received_at=now - timedelta(days=age_days),
        sender="deals@shop.example.com",
        subject=f"Subject {message_id}",
        body="body",
    )


class FakeClassifier:
    def __init__(self, category: str = "PROMOTIONS", confidence: float = 0.95, token_cost: int = 120):
        self.default = ClassificationResult(category, confidence, token_cost)
        self.by_message: dict[str, ClassificationResult] = {}
        self.fail_on: set[str] = set()
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def classify(self, message: InboundMessage) -> ClassificationResult:
        with self._lock:
            self.calls.append(message.id)
        if message.id in self.fail_on:
            raise RuntimeError("classifier unavailable")
        return self.by_message.get(message.id, self.default)


class FakeSource:
    def __init__(self):
        self.messages: dict[str, list[InboundMessage]] = {}
        self.calls: list[str] = []

    def fetch_messages(self, user_email: str, access_token: str) -> list[InboundMessage]:
        self.calls.append(user_email)
        return list(self.messages.get(user_email, []))


class FakeMailbox:
    def __init__(self):
        self.calls: list[tuple] = []
        self.fail_on: set[str] = set()
        self._lock = threading.Lock()

    def _record(self, call: tuple) -> None:
        with self._lock:
            self.calls.append(call)

    def apply_labels(self, message_id: str, add: list[str], remove: list[str]) -> None:
        if message_id in self.fail_on:
            raise RuntimeError("mailbox unavailable")
        self._record(("labels", message_id, tuple(add), tuple(remove)))

    def archive(self, message_id: str) -> None:
        if message_id in self.fail_on:
            raise RuntimeError("mailbox unavailable")
        self._record(("archive", message_id))

    def delete(self, message_id: str) -> None:
        if message_id in self.fail_on:
            raise RuntimeError("mailbox unavailable")
        self._record(("delete", message_id))

    def mutations(self, kind: str) -> list[str]:
        return [call[1] for call in self.calls if call[0] == kind]


class FakeExchange:
    def __init__(self):
        self.calls: list[str] = []
        self.error: Exception | None = None

    def refresh(self, refresh_token: str) -> RefreshedCredentials:
        self.calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        return RefreshedCredentials("refreshed-access", utcnow() + timedelta(hours=1))


class FakeSender:
    def __init__(self):
        self.sent: list[tuple] = []
        self.fail = False

    def send(self, user_id, content) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append((user_id, content))


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def mailbox():
    return FakeMailbox()


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def sender():
    return FakeSender()

