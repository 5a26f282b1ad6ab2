"""
Tests for OAuth token validation, refresh and the sticky reauthentication flag
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import Mock

import pytest
from cryptography.fernet import Fernet

from sweepq.contracts import (
    ExternalCallFailedError,
    NeedsReauthenticationError,
    RefreshedCredentials,
    TerminalRefreshError,
)
from sweepq.infrastructure.token_lifecycle import (
    NeedsReauthentication,
    NeedsRefresh,
    TokenLifecycle,
    Valid,
)
from sweepq.storage.account_access_repository import AccountAccessRepository
from sweepq.storage.models import AccountAccess
from sweepq.utils.time import utcnow


@pytest.fixture
def lifecycle(exchange, access_repo):
    return TokenLifecycle(exchange, access_repo, margin_seconds=300)


@pytest.fixture
def email(users):
    return users.create("ana@example.com").email


def link(access_repo, email, expires_in: timedelta):
    access_repo.link_account(email, "stored-access", "stored-refresh", utcnow() + expires_in)


class TestEnsureValid:
    def test_valid_token_is_returned_without_refresh(self, lifecycle, access_repo, exchange, email):
        link(access_repo, email, timedelta(hours=1))

        assert lifecycle.ensure_valid(email) == Valid("stored-access")
        assert exchange.calls == []

    def test_token_inside_margin_is_refreshed_and_persisted(
        self, lifecycle, access_repo, exchange, email
    ):
        link(access_repo, email, timedelta(minutes=2))

        state = lifecycle.ensure_valid(email)

        assert state == Valid("refreshed-access")
        assert exchange.calls == ["stored-refresh"]
        stored = access_repo.get(email)
        assert stored.access_token == "refreshed-access"
        assert stored.last_refresh_at is not None
        assert stored.refresh_token == "stored-refresh"

    def test_terminal_failure_sets_sticky_flag(self, lifecycle, access_repo, exchange, email):
        link(access_repo, email, timedelta(minutes=-5))
        exchange.error = TerminalRefreshError("invalid_grant")

        assert lifecycle.ensure_valid(email) == NeedsReauthentication(email)
        assert access_repo.needs_reauthentication(email) is True

        exchange.error = None
        assert lifecycle.ensure_valid(email) == NeedsReauthentication(email)
        assert exchange.calls == ["stored-refresh"], "No refresh once flagged"

    def test_transient_failure_is_retried_next_cycle(
        self, lifecycle, access_repo, exchange, email
    ):
        link(access_repo, email, timedelta(minutes=-5))
        exchange.error = TimeoutError("token endpoint timed out")

        state = lifecycle.ensure_valid(email)

        assert isinstance(state, NeedsRefresh)
        assert "timed out" in state.reason
        assert access_repo.needs_reauthentication(email) is False

        exchange.error = None
        assert lifecycle.ensure_valid(email) == Valid("refreshed-access")

    def test_missing_account_needs_reauthentication(self, lifecycle, exchange, email):
        assert lifecycle.ensure_valid(email) == NeedsReauthentication(email)
        assert exchange.calls == []

    def test_undecryptable_tokens_flag_reauthentication(self, exchange, access_repo, email):
        link(access_repo, email, timedelta(hours=1))
        wrong_key = AccountAccessRepository(cipher=Fernet(Fernet.generate_key()))
        lifecycle = TokenLifecycle(exchange, wrong_key)

        assert lifecycle.ensure_valid(email) == NeedsReauthentication(email)
        assert access_repo.needs_reauthentication(email) is True


class TestRequireAccessToken:
    def test_returns_usable_token(self, lifecycle, access_repo, email):
        link(access_repo, email, timedelta(minutes=2))

        assert lifecycle.require_access_token(email) == "refreshed-access"

    def test_revoked_grant_raises_reauthentication(self, lifecycle, access_repo, exchange, email):
        link(access_repo, email, timedelta(minutes=-5))
        exchange.error = TerminalRefreshError("invalid_grant")

        with pytest.raises(NeedsReauthenticationError) as excinfo:
            lifecycle.require_access_token(email)

        assert excinfo.value.user_email == email

    def test_transient_failure_raises_retryable_error(
        self, lifecycle, access_repo, exchange, email
    ):
        link(access_repo, email, timedelta(minutes=-5))
        exchange.error = TimeoutError("token endpoint timed out")

        with pytest.raises(ExternalCallFailedError) as excinfo:
            lifecycle.require_access_token(email)

        assert excinfo.value.operation == "refresh"
        assert "timed out" in str(excinfo.value)
        assert access_repo.needs_reauthentication(email) is False

def test_mocked_repository_flag_short_circuits_refresh():
    """A flagged account is never refreshed, whatever its expiry"""
    repository = Mock()
    repository.get.return_value = AccountAccess(
        user_email="ana@example.com",
        access_token="a",
        refresh_token="r",
        expires_at=utcnow() - timedelta(days=1),
        needs_reauthentication=True,
    )
    exchange = Mock()

    state = TokenLifecycle(exchange, repository).ensure_valid("ana@example.com")

    assert state == NeedsReauthentication("ana@example.com")
    exchange.refresh.assert_not_called()
    repository.update_after_refresh.assert_not_called()


def test_refreshed_expiry_is_persisted_as_utc():
    repository = Mock()
    repository.get.return_value = AccountAccess(
        user_email="ana@example.com",
        access_token="a",
        refresh_token="r",
        expires_at=utcnow(),
    )
    naive_expiry = datetime(2030, 1, 1, 12, 0)
    exchange = Mock()
    exchange.refresh.return_value = RefreshedCredentials("fresh", naive_expiry)

    assert TokenLifecycle(exchange, repository).ensure_valid("ana@example.com") == Valid("fresh")
    repository.update_after_refresh.assert_called_once_with(
        "ana@example.com", "fresh", naive_expiry.replace(tzinfo=UTC)
    )


class TestLinkAccount:
    def test_link_clears_flag(self, lifecycle, access_repo, exchange, email):
        link(access_repo, email, timedelta(minutes=-5))
        exchange.error = TerminalRefreshError("invalid_grant")
        lifecycle.ensure_valid(email)

        lifecycle.link_account(email, "new-access", "new-refresh", utcnow() + timedelta(hours=1))

        assert lifecycle.ensure_valid(email) == Valid("new-access")
