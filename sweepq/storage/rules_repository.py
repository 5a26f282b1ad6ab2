"""Cleanup settings and custom category repositories

The two layers stay separate: AutoCleanupSetting is the per-category policy
override, CustomEmailRule defines a user category and its classifier hint.
They are joined only when a policy is resolved.

Every write notifies registered change listeners with the user id so
per-user policy caches can drop stale entries.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable

from sweepq.classification.categories import is_reserved
from sweepq.contracts.errors import CategoryConflictError
from sweepq.observability.logging import get_logger
from sweepq.observability.telemetry import counter
from sweepq.storage import BaseRepository
from sweepq.storage.models import AutoCleanupSetting, CustomEmailRule
from sweepq.utils.time import to_db_ts, utcnow

logger = get_logger(__name__)

ChangeListener = Callable[[int], None]


class _NotifyingRepository(BaseRepository):
    def __init__(self, table_name: str) -> None:
        super().__init__(table_name)
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _notify(self, user_id: int) -> None:
        for listener in self._listeners:
            listener(user_id)


class CleanupSettingsRepository(_NotifyingRepository):
    """Per-user, per-category cleanup policy overrides (auto_cleanup_setting)."""

    def __init__(self) -> None:
        super().__init__("auto_cleanup_setting")

    def get(self, user_id: int, category: str) -> AutoCleanupSetting | None:
        row = self.query_one(
            "SELECT * FROM auto_cleanup_setting WHERE user_id = ? AND category = ?",
            (user_id, category),
        )
        return AutoCleanupSetting.from_db_row(row) if row else None

    def list_for_user(self, user_id: int) -> list[AutoCleanupSetting]:
        rows = self.query_all(
            "SELECT * FROM auto_cleanup_setting WHERE user_id = ? ORDER BY category",
            (user_id,),
        )
        return [AutoCleanupSetting.from_db_row(row) for row in rows]

    def upsert(self, setting: AutoCleanupSetting) -> AutoCleanupSetting:
        """
        Create or replace the override for (category, user)

        Side Effects:
            - Writes auto_cleanup_setting
            - Notifies change listeners for setting.user_id
        """
        now = to_db_ts(utcnow())
        self.execute(
            """
            INSERT INTO auto_cleanup_setting
                (user_id, category, is_disabled, after_days_old, cleanup_action,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(category, user_id) DO UPDATE SET
                is_disabled = excluded.is_disabled,
                after_days_old = excluded.after_days_old,
                cleanup_action = excluded.cleanup_action,
                updated_at = excluded.updated_at
            """,
            (
                setting.user_id,
                setting.category,
                1 if setting.is_disabled else 0,
                setting.after_days_old,
                setting.cleanup_action.value,
                now,
                now,
            ),
        )
        logger.info(
            "Cleanup setting saved: user=%s category=%s action=%s after=%dd disabled=%s",
            setting.user_id,
            setting.category,
            setting.cleanup_action.value,
            setting.after_days_old,
            setting.is_disabled,
        )
        self._notify(setting.user_id)

        saved = self.get(setting.user_id, setting.category)
        assert saved is not None
        return saved

    def delete(self, user_id: int, category: str) -> bool:
        deleted = self.execute(
            "DELETE FROM auto_cleanup_setting WHERE user_id = ? AND category = ?",
            (user_id, category),
        )
        self._notify(user_id)
        return deleted > 0


class CustomRulesRepository(_NotifyingRepository):
    """User-defined categories (custom_email_rule)."""

    def __init__(self) -> None:
        super().__init__("custom_email_rule")

    def create(self, user_id: int, category: str, prompt_content: str) -> CustomEmailRule:
        """
        Define a custom category for a user

        Raises:
            CategoryConflictError: If the name is a built-in category or the user
                already has a custom category with the same name (case-insensitive)
        """
        category = category.strip()
        if not category:
            raise ValueError("Category must be a non-empty label")
        if is_reserved(category):
            counter("rules.custom_category_conflict")
            raise CategoryConflictError(f"'{category}' is a built-in category name")

        now = to_db_ts(utcnow())
        try:
            self.execute(
                """
                INSERT INTO custom_email_rule
                    (user_id, prompt_content, category, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, prompt_content, category, now, now),
            )
        except sqlite3.IntegrityError as e:
            if "UNIQUE" not in str(e):
                raise
            counter("rules.custom_category_conflict")
            raise CategoryConflictError(
                f"Custom category '{category}' already exists for user {user_id}"
            ) from e

        logger.info("Custom category created: user=%s category=%s", user_id, category)
        self._notify(user_id)

        row = self.query_one(
            "SELECT * FROM custom_email_rule WHERE user_id = ? AND category = ?",
            (user_id, category),
        )
        assert row is not None
        return CustomEmailRule.from_db_row(row)

    def list_for_user(self, user_id: int) -> list[CustomEmailRule]:
        rows = self.query_all(
            "SELECT * FROM custom_email_rule WHERE user_id = ? ORDER BY id", (user_id,)
        )
        return [CustomEmailRule.from_db_row(row) for row in rows]

    def categories_for_user(self, user_id: int) -> set[str]:
        rows = self.query_all(
            "SELECT category FROM custom_email_rule WHERE user_id = ?", (user_id,)
        )
        return {row["category"] for row in rows}

    def delete(self, user_id: int, rule_id: int) -> bool:
        deleted = self.execute(
            "DELETE FROM custom_email_rule WHERE user_id = ? AND id = ?", (user_id, rule_id)
        )
        self._notify(user_id)
        return deleted > 0
