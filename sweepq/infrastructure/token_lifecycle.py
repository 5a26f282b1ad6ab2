"""OAuth token lifecycle

Decides whether a user's mailbox may be synced this cycle:
- Token valid beyond the safety margin: Valid(access_token)
- Token expired or expiring soon: refresh through the credential exchange
  collaborator and persist the result
- Refresh rejected as terminal (revoked grant): flag needs_reauthentication

SECURITY:
- Tokens are read and written through AccountAccessRepository (Fernet-encrypted)
- needs_reauthentication is sticky; only link_account (a fresh exchange) clears it
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sweepq.config import TOKEN_REFRESH_MARGIN_SECONDS
from sweepq.contracts.collaborators import CredentialExchange
from sweepq.contracts.errors import (
    CredentialEncryptionError,
    ExternalCallFailedError,
    NeedsReauthenticationError,
    TerminalRefreshError,
)
from sweepq.observability.logging import get_logger, mask_email
from sweepq.observability.telemetry import counter, log_event
from sweepq.storage.account_access_repository import AccountAccessRepository
from sweepq.utils.time import ensure_aware, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class Valid:
    access_token: str


@dataclass(frozen=True)
class NeedsRefresh:
    """Refresh failed transiently; try again next cycle."""

    reason: str


@dataclass(frozen=True)
class NeedsReauthentication:
    user_email: str


TokenState = Valid | NeedsRefresh | NeedsReauthentication


class TokenLifecycle:
    def __init__(
        self,
        exchange: CredentialExchange,
        repository: AccountAccessRepository | None = None,
        margin_seconds: int = TOKEN_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.exchange = exchange
        self.repository = repository or AccountAccessRepository()
        self.margin = timedelta(seconds=margin_seconds)
        self._clock = clock

    def ensure_valid(self, user_email: str) -> TokenState:
        """
        Return a usable access token, refreshing first if needed

        Side Effects:
            - May call the credential exchange collaborator
            - Persists refreshed tokens, or sets needs_reauthentication on terminal failure
        """
        try:
            access = self.repository.get(user_email)
        except CredentialEncryptionError:
            logger.error("Stored tokens for %s cannot be decrypted", mask_email(user_email))
            self.repository.mark_needs_reauthentication(user_email)
            counter("oauth.reauth_required")
            return NeedsReauthentication(user_email)

        if access is None:
            logger.warning("No linked account for %s", mask_email(user_email))
            return NeedsReauthentication(user_email)

        if access.needs_reauthentication:
            counter("oauth.reauth_pending")
            return NeedsReauthentication(user_email)

        now = self._clock()
        if ensure_aware(access.expires_at) > now + self.margin:
            return Valid(access.access_token)

        logger.info("Token for %s expired or expiring soon, refreshing", mask_email(user_email))
        try:
            refreshed = self.exchange.refresh(access.refresh_token)
        except TerminalRefreshError as e:
            logger.warning("Refresh rejected for %s: %s", mask_email(user_email), e)
            self.repository.mark_needs_reauthentication(user_email)
            counter("oauth.reauth_required")
            log_event("oauth.reauth_required", user=mask_email(user_email))
            return NeedsReauthentication(user_email)
        except Exception as e:
            # Anything other than a terminal rejection is retried next cycle
            logger.warning("Transient refresh failure for %s: %s", mask_email(user_email), e)
            counter("oauth.refresh_failed")
            return NeedsRefresh(str(e))

        self.repository.update_after_refresh(
            user_email, refreshed.access_token, ensure_aware(refreshed.expires_at)
        )
        counter("oauth.token_refreshed")
        log_event("oauth.token_refreshed", user=mask_email(user_email))
        return Valid(refreshed.access_token)

    def require_access_token(self, user_email: str) -> str:
        """
        ensure_valid() for callers that only proceed with a usable token

        Raises:
            NeedsReauthenticationError: If the account must be re-linked
            ExternalCallFailedError: If a refresh failed transiently
        """
        state = self.ensure_valid(user_email)
        if isinstance(state, NeedsReauthentication):
            raise NeedsReauthenticationError(user_email)
        if isinstance(state, NeedsRefresh):
            raise ExternalCallFailedError("refresh", state.reason)
        return state.access_token

    def link_account(
        self,
        user_email: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None:
        """Record credentials from a fresh authorization; clears needs_reauthentication."""
        self.repository.link_account(
            user_email, access_token, refresh_token, ensure_aware(expires_at)
        )
        counter("oauth.account_linked")
