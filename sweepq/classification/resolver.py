"""
Rule resolution: (user, category) -> effective cleanup policy.

Two per-user maps are joined only here:
- overrides: category -> CleanupPolicy (auto_cleanup_setting rows)
- hints: category -> classifier prompt (custom_email_rule rows)

Lookup chain:
1. The user's override for the exact category
2. The process-wide default table (built-in categories)
3. A custom category of the user with no override gets the generic default
4. Anything else is unknown and gets FALLBACK_POLICY, which never acts

resolve_policy never raises for an unknown category; it degrades to the
fallback and logs it.
"""

from __future__ import annotations

import json
import math
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

from cachetools import TTLCache

from sweepq.classification.categories import BUILTIN_CATEGORIES
from sweepq.config import (
    DEFAULT_AFTER_DAYS_OLD,
    DEFAULT_POLICIES_PATH,
    POLICY_CACHE_MAX_USERS,
    POLICY_CACHE_TTL_SECONDS,
)
from sweepq.observability.logging import get_logger
from sweepq.observability.telemetry import counter
from sweepq.storage.models import AutoCleanupSetting, CleanupAction
from sweepq.storage.rules_repository import CleanupSettingsRepository, CustomRulesRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class CleanupPolicy:
    is_disabled: bool
    after_days_old: float
    cleanup_action: CleanupAction

    @classmethod
    def from_setting(cls, setting: AutoCleanupSetting) -> CleanupPolicy:
        return cls(setting.is_disabled, setting.after_days_old, setting.cleanup_action)


DEFAULT_POLICY = CleanupPolicy(False, DEFAULT_AFTER_DAYS_OLD, CleanupAction.NOTHING)
FALLBACK_POLICY = CleanupPolicy(True, math.inf, CleanupAction.NOTHING)


class DefaultPolicies:
    """Immutable default policy table keyed by category. Build a new one to reload."""

    def __init__(self, policies: Mapping[str, CleanupPolicy]) -> None:
        self._policies = MappingProxyType(dict(policies))

    def get(self, category: str) -> CleanupPolicy | None:
        return self._policies.get(category)

    def __contains__(self, category: object) -> bool:
        return category in self._policies

    def __len__(self) -> int:
        return len(self._policies)

    @classmethod
    def builtin(cls) -> DefaultPolicies:
        return cls({category: DEFAULT_POLICY for category in BUILTIN_CATEGORIES})

    @classmethod
    def load(cls, path: str | Path) -> DefaultPolicies:
        """
        Load defaults from a JSON object layered over the built-in table

        Format: {"PROMOTIONS": {"cleanup_action": "ARCHIVE", "after_days_old": 14,
        "is_disabled": false}, ...}. Omitted fields keep the generic default.

        Raises:
            ValueError: If the file is not a JSON object or an entry is invalid
        """
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError(f"Default policy file must contain a JSON object: {path}")

        policies: dict[str, CleanupPolicy] = {
            category: DEFAULT_POLICY for category in BUILTIN_CATEGORIES
        }
        for category, entry in raw.items():
            if not category or not isinstance(entry, dict):
                raise ValueError(f"Invalid default policy entry for {category!r}")
            after = int(entry.get("after_days_old", DEFAULT_AFTER_DAYS_OLD))
            if after < 0:
                raise ValueError(f"after_days_old must be >= 0 for {category!r}")
            policies[category] = CleanupPolicy(
                is_disabled=bool(entry.get("is_disabled", False)),
                after_days_old=after,
                cleanup_action=CleanupAction(entry.get("cleanup_action", "NOTHING")),
            )

        logger.info("Loaded %d default policies from %s", len(raw), path)
        return cls(policies)

    @classmethod
    def from_config(cls) -> DefaultPolicies:
        if DEFAULT_POLICIES_PATH:
            return cls.load(DEFAULT_POLICIES_PATH)
        return cls.builtin()


@dataclass(frozen=True)
class UserRules:
    """One user's override and hint maps, read together."""

    overrides: Mapping[str, CleanupPolicy]
    hints: Mapping[str, str]


class PolicyCache:
    """
    Bounded read-through cache of UserRules

    A TTLCache of at most max_users entries (least recently used evicted
    first), each expiring after ttl_seconds. Writes to a user's rules
    invalidate that user's entry. A load that started before an
    invalidation is not stored (see version).
    """

    def __init__(
        self,
        max_users: int = POLICY_CACHE_MAX_USERS,
        ttl_seconds: float = POLICY_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_users = max_users
        self.ttl_seconds = ttl_seconds
        self._entries: TTLCache[int, UserRules] = TTLCache(
            maxsize=max_users, ttl=ttl_seconds, timer=clock
        )
        self._lock = threading.Lock()
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    def get(self, user_id: int) -> UserRules | None:
        with self._lock:
            return self._entries.get(user_id)

    def put(self, user_id: int, rules: UserRules, version: int | None = None) -> None:
        with self._lock:
            if version is not None and version != self._version:
                return
            self._entries[user_id] = rules

    def invalidate(self, user_id: int) -> None:
        with self._lock:
            self._version += 1
            self._entries.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._version += 1
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)


class RuleResolver:
    def __init__(
        self,
        settings_repo: CleanupSettingsRepository | None = None,
        rules_repo: CustomRulesRepository | None = None,
        defaults: DefaultPolicies | None = None,
        cache: PolicyCache | None = None,
    ) -> None:
        self.settings_repo = settings_repo or CleanupSettingsRepository()
        self.rules_repo = rules_repo or CustomRulesRepository()
        self.defaults = defaults if defaults is not None else DefaultPolicies.from_config()
        self.cache = cache if cache is not None else PolicyCache()

        self.settings_repo.add_listener(self.invalidate)
        self.rules_repo.add_listener(self.invalidate)

    def resolve_policy(self, user_id: int, category: str) -> CleanupPolicy:
        rules = self._rules_for(user_id)

        override = rules.overrides.get(category)
        if override is not None:
            return override

        default = self.defaults.get(category)
        if default is not None:
            return default

        if category in rules.hints:
            return DEFAULT_POLICY

        counter("resolver.unknown_category")
        logger.warning(
            "Unknown category %r for user %s; using fallback policy", category, user_id
        )
        return FALLBACK_POLICY

    def classifier_hints(self, user_id: int) -> Mapping[str, str]:
        """User-defined categories and their prompts, for the classifier collaborator."""
        return self._rules_for(user_id).hints

    def is_known_category(self, user_id: int, category: str) -> bool:
        return category in self.defaults or category in self._rules_for(user_id).hints

    def invalidate(self, user_id: int) -> None:
        self.cache.invalidate(user_id)

    def reload_defaults(self, defaults: DefaultPolicies) -> None:
        """Swap in a new default table and drop every cached user."""
        self.defaults = defaults
        self.cache.clear()
        counter("resolver.defaults_reloaded")
        logger.info("Default policy table reloaded (%d categories)", len(defaults))

    def _rules_for(self, user_id: int) -> UserRules:
        cached = self.cache.get(user_id)
        if cached is not None:
            counter("resolver.cache_hit")
            return cached

        counter("resolver.cache_miss")
        version = self.cache.version
        rules = UserRules(
            overrides=MappingProxyType(
                {
                    setting.category: CleanupPolicy.from_setting(setting)
                    for setting in self.settings_repo.list_for_user(user_id)
                }
            ),
            hints=MappingProxyType(
                {rule.category: rule.prompt_content for rule in self.rules_repo.list_for_user(user_id)}
            ),
        )
        self.cache.put(user_id, rules, version)
        return rules
