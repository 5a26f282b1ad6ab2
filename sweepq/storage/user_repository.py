"""User and user settings repositories

A User owns every other per-user entity. Deleting a user relies on the
schema's ON DELETE CASCADE to purge account access, settings, rules, ledger
rows, summaries and usage stats in one statement.
"""

from __future__ import annotations

from datetime import datetime

from sweepq.contracts.errors import NotFoundError
from sweepq.observability.logging import get_logger, mask_email
from sweepq.storage import BaseRepository
from sweepq.storage.models import SubscriptionStatus, User, UserSettings
from sweepq.utils.time import to_db_ts, utcnow

logger = get_logger(__name__)


class UserRepository(BaseRepository):
    def __init__(self) -> None:
        super().__init__("user")

    def create(
        self,
        email: str,
        subscription_status: SubscriptionStatus = SubscriptionStatus.UNPAID,
    ) -> User:
        """
        Create a user

        Raises:
            sqlite3.IntegrityError: If a user with this email already exists
        """
        now = to_db_ts(utcnow())
        self.execute(
            """
            INSERT INTO user (email, subscription_status, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            """,
            (email, subscription_status.value, now, now),
        )
        logger.info("Created user %s (%s)", mask_email(email), subscription_status.value)

        user = self.get_by_email(email)
        assert user is not None
        return user

    def get(self, user_id: int) -> User | None:
        row = self.query_one("SELECT * FROM user WHERE id = ?", (user_id,))
        return User.from_db_row(row) if row else None

    def get_by_email(self, email: str) -> User | None:
        row = self.query_one("SELECT * FROM user WHERE email = ?", (email,))
        return User.from_db_row(row) if row else None

    def require(self, user_id: int) -> User:
        user = self.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def list_all(self) -> list[User]:
        rows = self.query_all("SELECT * FROM user ORDER BY id")
        return [User.from_db_row(row) for row in rows]

    def set_subscription_status(
        self,
        user_id: int,
        status: SubscriptionStatus,
        payment_attempt_at: datetime | None = None,
        payment_succeeded: bool = False,
    ) -> None:
        """
        Record a subscription state change (billing events are fed in externally)

        Side Effects:
            - Updates subscription_status and, when given, the payment timestamps
        """
        now = to_db_ts(utcnow())
        attempt = to_db_ts(payment_attempt_at) if payment_attempt_at else None
        self.execute(
            """
            UPDATE user
            SET subscription_status = ?,
                last_payment_attempt_at = COALESCE(?, last_payment_attempt_at),
                last_successful_payment_at = CASE
                    WHEN ? THEN COALESCE(?, last_successful_payment_at)
                    ELSE last_successful_payment_at
                END,
                updated_at = ?
            WHERE id = ?
            """,
            (status.value, attempt, 1 if payment_succeeded else 0, attempt, now, user_id),
        )

    def update_last_sync(self, user_id: int, synced_at: datetime) -> None:
        self.execute(
            "UPDATE user SET last_sync = ?, updated_at = ? WHERE id = ?",
            (to_db_ts(synced_at), to_db_ts(utcnow()), user_id),
        )

    def delete(self, user_id: int) -> bool:
        """
        Delete a user and, by cascade, all derived per-user state

        Returns:
            True if a user row was deleted
        """
        deleted = self.execute("DELETE FROM user WHERE id = ?", (user_id,))
        if deleted:
            logger.info("Deleted user %s and all derived state", user_id)
        return deleted > 0


class UserSettingsRepository(BaseRepository):
    """Daily summary preferences. A missing row means the defaults apply."""

    def __init__(self) -> None:
        super().__init__("user_settings")

    def get(self, user_email: str) -> UserSettings:
        row = self.query_one("SELECT * FROM user_settings WHERE user_email = ?", (user_email,))
        if row is None:
            return UserSettings(user_email=user_email)
        return UserSettings.from_db_row(row)

    def upsert(self, settings: UserSettings) -> UserSettings:
        self.execute(
            """
            INSERT INTO user_settings
                (user_email, daily_summary_enabled, daily_summary_time, user_time_zone_offset)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_email) DO UPDATE SET
                daily_summary_enabled = excluded.daily_summary_enabled,
                daily_summary_time = excluded.daily_summary_time,
                user_time_zone_offset = excluded.user_time_zone_offset
            """,
            (
                settings.user_email,
                1 if settings.daily_summary_enabled else 0,
                settings.daily_summary_time,
                settings.time_zone_offset,
            ),
        )
        return settings
