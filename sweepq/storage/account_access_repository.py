"""Account access repository for OAuth token storage

SECURITY:
- Access and refresh tokens encrypted with Fernet (symmetric encryption)
- Encryption key must be set via SWEEPQ_ENCRYPTION_KEY environment variable
- AccountAccess repr never includes token material
"""

from __future__ import annotations

import os
from datetime import datetime

from cryptography.fernet import Fernet, InvalidToken

from sweepq.contracts.errors import CredentialEncryptionError
from sweepq.observability.logging import get_logger, mask_email
from sweepq.storage import BaseRepository
from sweepq.storage.models import AccountAccess
from sweepq.utils.time import from_db_ts, to_db_ts, utcnow

logger = get_logger(__name__)


def load_cipher(encryption_key: str | None = None) -> Fernet:
    """
    Build the Fernet cipher for token encryption

    Raises:
        ValueError: If no key is given and SWEEPQ_ENCRYPTION_KEY is unset or malformed
    """
    key = encryption_key or os.getenv("SWEEPQ_ENCRYPTION_KEY")

    if not key:
        raise ValueError(
            "SWEEPQ_ENCRYPTION_KEY environment variable must be set. "
            "Generate one with: python -c "
            "'from cryptography.fernet import Fernet; "
            "print(Fernet.generate_key().decode())'"
        )

    try:
        return Fernet(key.encode())
    except ValueError as e:
        raise ValueError(f"Invalid encryption key format: {e}") from e


class AccountAccessRepository(BaseRepository):
    """
    Encrypted OAuth credentials, one row per user email

    The needs_reauthentication flag is sticky: update_after_refresh never
    touches it, only link_account clears it.
    """

    def __init__(self, cipher: Fernet | None = None) -> None:
        super().__init__("user_account_access")
        self._cipher = cipher or load_cipher()

    def _encrypt(self, token: str) -> str:
        try:
            return self._cipher.encrypt(token.encode()).decode()
        except (TypeError, ValueError) as e:
            logger.error("Failed to encrypt token: %s", e)
            raise CredentialEncryptionError(f"Encryption failed: {e}") from e

    def _decrypt(self, encrypted: str) -> str:
        try:
            return self._cipher.decrypt(encrypted.encode()).decode()
        except (InvalidToken, TypeError, ValueError) as e:
            logger.error("Failed to decrypt token: %s", type(e).__name__)
            raise CredentialEncryptionError(f"Decryption failed: {type(e).__name__}") from e

    def link_account(
        self,
        user_email: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None:
        """
        Store credentials from a fresh authorization

        This is the only write that clears needs_reauthentication.

        Side Effects:
            - Inserts or replaces the user's row in user_account_access
            - Encrypts both tokens before storage
        """
        now = to_db_ts(utcnow())
        self.execute(
            """
            INSERT INTO user_account_access
                (user_email, access_token, refresh_token, expires_at,
                 needs_reauthentication, created_at, updated_at)
            VALUES (?, ?, ?, ?, 0, ?, ?)
            ON CONFLICT(user_email) DO UPDATE SET
                access_token = excluded.access_token,
                refresh_token = excluded.refresh_token,
                expires_at = excluded.expires_at,
                needs_reauthentication = 0,
                updated_at = excluded.updated_at
            """,
            (
                user_email,
                self._encrypt(access_token),
                self._encrypt(refresh_token),
                to_db_ts(expires_at),
                now,
                now,
            ),
        )
        logger.info("Linked account for %s", mask_email(user_email))

    def get(self, user_email: str) -> AccountAccess | None:
        """
        Raises:
            CredentialEncryptionError: If stored tokens cannot be decrypted
        """
        row = self.query_one(
            "SELECT * FROM user_account_access WHERE user_email = ?", (user_email,)
        )
        if not row:
            return None

        expires_at = from_db_ts(row["expires_at"])
        assert expires_at is not None
        return AccountAccess(
            user_email=row["user_email"],
            access_token=self._decrypt(row["access_token"]),
            refresh_token=self._decrypt(row["refresh_token"]),
            expires_at=expires_at,
            needs_reauthentication=bool(row["needs_reauthentication"]),
            last_refresh_at=from_db_ts(row["last_refresh_at"]),
            updated_at=from_db_ts(row["updated_at"]),
        )

    def needs_reauthentication(self, user_email: str) -> bool:
        """Read the flag without decrypting tokens. A missing row counts as needing auth."""
        row = self.query_one(
            "SELECT needs_reauthentication FROM user_account_access WHERE user_email = ?",
            (user_email,),
        )
        return row is None or bool(row["needs_reauthentication"])

    def update_after_refresh(
        self, user_email: str, access_token: str, expires_at: datetime
    ) -> None:
        """
        Persist a refreshed access token

        Side Effects:
            - Updates access_token, expires_at, last_refresh_at, updated_at
            - Leaves needs_reauthentication untouched
        """
        now = to_db_ts(utcnow())
        self.execute(
            """
            UPDATE user_account_access
            SET access_token = ?,
                expires_at = ?,
                last_refresh_at = ?,
                updated_at = ?
            WHERE user_email = ?
            """,
            (self._encrypt(access_token), to_db_ts(expires_at), now, now, user_email),
        )

    def mark_needs_reauthentication(self, user_email: str) -> None:
        self.execute(
            """
            UPDATE user_account_access
            SET needs_reauthentication = 1, updated_at = ?
            WHERE user_email = ?
            """,
            (to_db_ts(utcnow()), user_email),
        )
        logger.warning("Account %s flagged for reauthentication", mask_email(user_email))
