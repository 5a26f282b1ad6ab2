"""
Tests for rule resolution and the per-user policy cache
"""

from __future__ import annotations

import json
import math

import pytest

from sweepq.classification.resolver import (
    DEFAULT_POLICY,
    FALLBACK_POLICY,
    CleanupPolicy,
    DefaultPolicies,
    PolicyCache,
    RuleResolver,
    UserRules,
)
from sweepq.observability.telemetry import get_counter
from sweepq.storage.models import AutoCleanupSetting, CleanupAction
from sweepq.storage.rules_repository import CleanupSettingsRepository, CustomRulesRepository

DELETE_AFTER_5 = CleanupPolicy(False, 5, CleanupAction.DELETE)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def resolver(sweepq_db):
    defaults = DefaultPolicies(
        {
            "PROMOTIONS": DELETE_AFTER_5,
            "SOCIAL": CleanupPolicy(False, 30, CleanupAction.ARCHIVE),
        }
    )
    return RuleResolver(defaults=defaults)


@pytest.fixture
def user(users):
    return users.create("ana@example.com")


class TestResolvePolicy:
    def test_default_table_applies_without_override(self, resolver, user):
        assert resolver.resolve_policy(user.id, "PROMOTIONS") == DELETE_AFTER_5

    def test_override_wins_over_default(self, resolver, user):
        resolver.settings_repo.upsert(
            AutoCleanupSetting(
                user_id=user.id,
                category="PROMOTIONS",
                after_days_old=2,
                cleanup_action=CleanupAction.ARCHIVE,
            )
        )

        policy = resolver.resolve_policy(user.id, "PROMOTIONS")

        assert policy == CleanupPolicy(False, 2, CleanupAction.ARCHIVE)

    def test_disabled_override(self, resolver, user):
        resolver.settings_repo.upsert(
            AutoCleanupSetting(
                user_id=user.id,
                category="PROMOTIONS",
                is_disabled=True,
                cleanup_action=CleanupAction.DELETE,
            )
        )

        assert resolver.resolve_policy(user.id, "PROMOTIONS").is_disabled is True

    def test_override_is_per_user(self, resolver, users, user):
        other = users.create("bo@example.com")
        resolver.settings_repo.upsert(
            AutoCleanupSetting(
                user_id=user.id, category="PROMOTIONS", cleanup_action=CleanupAction.NOTHING
            )
        )

        assert resolver.resolve_policy(other.id, "PROMOTIONS") == DELETE_AFTER_5

    def test_custom_category_without_override_gets_generic_default(self, resolver, user):
        resolver.rules_repo.create(user.id, "Travel", "flights and hotels")

        assert resolver.resolve_policy(user.id, "Travel") == DEFAULT_POLICY

    def test_custom_category_with_override(self, resolver, user):
        resolver.rules_repo.create(user.id, "Travel", "flights and hotels")
        resolver.settings_repo.upsert(
            AutoCleanupSetting(
                user_id=user.id,
                category="Travel",
                after_days_old=1,
                cleanup_action=CleanupAction.ARCHIVE,
            )
        )

        assert resolver.resolve_policy(user.id, "Travel").cleanup_action is CleanupAction.ARCHIVE

    def test_unknown_category_degrades_to_fallback(self, resolver, user):
        policy = resolver.resolve_policy(user.id, "Groceries")

        assert policy == FALLBACK_POLICY
        assert policy.is_disabled is True
        assert math.isinf(policy.after_days_old)
        assert get_counter("resolver.unknown_category") == 1

    def test_lookup_is_exact_for_non_builtin_names(self, resolver, user):
        resolver.rules_repo.create(user.id, "Travel", "hint")

        assert resolver.resolve_policy(user.id, "travel") == FALLBACK_POLICY

    def test_classifier_hints_and_known_categories(self, resolver, user):
        resolver.rules_repo.create(user.id, "Travel", "flights and hotels")

        assert dict(resolver.classifier_hints(user.id)) == {"Travel": "flights and hotels"}
        assert resolver.is_known_category(user.id, "Travel")
        assert resolver.is_known_category(user.id, "SOCIAL")
        assert not resolver.is_known_category(user.id, "Groceries")


class TestCacheInvalidation:
    def test_second_lookup_hits_cache(self, resolver, user):
        resolver.resolve_policy(user.id, "PROMOTIONS")
        resolver.resolve_policy(user.id, "SOCIAL")

        assert get_counter("resolver.cache_miss") == 1
        assert get_counter("resolver.cache_hit") == 1

    def test_write_is_visible_on_next_resolution(self, resolver, user):
        assert resolver.resolve_policy(user.id, "PROMOTIONS") == DELETE_AFTER_5

        resolver.settings_repo.upsert(
            AutoCleanupSetting(
                user_id=user.id, category="PROMOTIONS", cleanup_action=CleanupAction.NOTHING
            )
        )

        assert resolver.resolve_policy(user.id, "PROMOTIONS").cleanup_action is CleanupAction.NOTHING

    def test_writes_through_separate_repository_instances(self, sweepq_db, user):
        """A resolver only sees invalidations from repositories it listens to"""
        settings = CleanupSettingsRepository()
        rules = CustomRulesRepository()
        resolver = RuleResolver(settings, rules, DefaultPolicies.builtin())
        assert resolver.resolve_policy(user.id, "Travel") == FALLBACK_POLICY

        rules.create(user.id, "Travel", "hint")

        assert resolver.resolve_policy(user.id, "Travel") == DEFAULT_POLICY

    def test_deleting_override_restores_default(self, resolver, user):
        resolver.settings_repo.upsert(
            AutoCleanupSetting(
                user_id=user.id, category="PROMOTIONS", cleanup_action=CleanupAction.NOTHING
            )
        )
        resolver.resolve_policy(user.id, "PROMOTIONS")

        resolver.settings_repo.delete(user.id, "PROMOTIONS")

        assert resolver.resolve_policy(user.id, "PROMOTIONS") == DELETE_AFTER_5

    def test_reloaded_defaults_apply_to_cached_users(self, resolver, user):
        assert resolver.resolve_policy(user.id, "PROMOTIONS") == DELETE_AFTER_5
        archive_after_2 = CleanupPolicy(False, 2, CleanupAction.ARCHIVE)

        resolver.reload_defaults(DefaultPolicies({"PROMOTIONS": archive_after_2}))

        assert len(resolver.cache) == 0
        assert get_counter("resolver.defaults_reloaded") == 1
        assert resolver.resolve_policy(user.id, "PROMOTIONS") == archive_after_2
        assert resolver.resolve_policy(user.id, "SOCIAL") == FALLBACK_POLICY


class TestPolicyCache:
    RULES = UserRules(overrides={}, hints={})

    def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        cache = PolicyCache(max_users=10, ttl_seconds=60, clock=clock)
        cache.put(1, self.RULES)

        clock.now = 59
        assert cache.get(1) is self.RULES
        clock.now = 61
        assert cache.get(1) is None

    def test_least_recently_used_is_evicted(self):
        cache = PolicyCache(max_users=2, ttl_seconds=60, clock=FakeClock())
        cache.put(1, self.RULES)
        cache.put(2, self.RULES)
        cache.get(1)
        cache.put(3, self.RULES)

        assert cache.get(2) is None
        assert cache.get(1) is not None
        assert cache.get(3) is not None
        assert len(cache) == 2

    def test_stale_load_is_not_stored(self):
        """A load that began before an invalidation must not repopulate the cache"""
        cache = PolicyCache(clock=FakeClock())
        version = cache.version

        cache.invalidate(1)
        cache.put(1, self.RULES, version)

        assert cache.get(1) is None

    def test_expired_entries_are_not_counted(self):
        clock = FakeClock()
        cache = PolicyCache(ttl_seconds=60, clock=clock)
        cache.put(1, self.RULES)
        clock.now = 30
        cache.put(2, self.RULES)

        clock.now = 75

        assert len(cache) == 1
        assert cache.get(2) is self.RULES

    def test_clear_drops_everything(self):
        cache = PolicyCache(clock=FakeClock())
        cache.put(1, self.RULES)
        cache.put(2, self.RULES)

        cache.clear()

        assert len(cache) == 0

    def test_empty_cache_passed_to_resolver_is_used(self, sweepq_db):
        cache = PolicyCache()
        resolver = RuleResolver(defaults=DefaultPolicies.builtin(), cache=cache)

        assert resolver.cache is cache


class TestDefaultPolicies:
    def test_builtin_table_covers_builtin_categories(self):
        defaults = DefaultPolicies.builtin()

        assert "PROMOTIONS" in defaults
        assert "UNKNOWN" in defaults
        assert defaults.get("PROMOTIONS") == DEFAULT_POLICY

    def test_load_layers_over_builtins(self, tmp_path):
        path = tmp_path / "defaults.json"
        path.write_text(
            json.dumps(
                {
                    "PROMOTIONS": {"cleanup_action": "DELETE", "after_days_old": 14},
                    "SOCIAL": {"cleanup_action": "ARCHIVE"},
                }
            )
        )

        defaults = DefaultPolicies.load(path)

        assert defaults.get("PROMOTIONS") == CleanupPolicy(False, 14, CleanupAction.DELETE)
        assert defaults.get("SOCIAL") == CleanupPolicy(False, 7, CleanupAction.ARCHIVE)
        assert defaults.get("RECEIPTS") == DEFAULT_POLICY

    @pytest.mark.parametrize(
        "content",
        [
            "[]",
            json.dumps({"PROMOTIONS": "DELETE"}),
            json.dumps({"PROMOTIONS": {"after_days_old": -1}}),
            json.dumps({"PROMOTIONS": {"cleanup_action": "SHRED"}}),
        ],
    )
    def test_load_rejects_invalid_files(self, tmp_path, content):
        path = tmp_path / "defaults.json"
        path.write_text(content)

        with pytest.raises(ValueError):
            DefaultPolicies.load(path)
