"""Per-user settings endpoints for the sweepq API.

- GET/PUT/DELETE /api/users/{user_id}/cleanup-settings[/{category}] - policy overrides
- GET/POST/DELETE /api/users/{user_id}/custom-rules[/{rule_id}] - custom categories
- GET/PUT /api/users/{user_id}/settings - daily summary preferences
- GET /api/users/{user_id}/policy/{category} - effective (resolved) policy
- GET /api/users/{user_id}/usage - token usage against quota

Override and custom-rule writes go through the resolver's repositories, so
the user's cached policies are invalidated before the response is sent.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException, Response, status

from sweepq.api.models import (
    CleanupSettingUpdate,
    CustomRuleCreate,
    PolicyResponse,
    UsageResponse,
    UserSettingsUpdate,
)
from sweepq.contracts.errors import CategoryConflictError
from sweepq.infrastructure.token_meter import QuotaExceeded
from sweepq.observability.telemetry import log_event
from sweepq.storage.models import AutoCleanupSetting, User, UserSettings

if TYPE_CHECKING:
    from sweepq.classification.resolver import RuleResolver
    from sweepq.infrastructure.token_meter import TokenUsageMeter
    from sweepq.storage.user_repository import UserRepository, UserSettingsRepository

router = APIRouter(prefix="/api/users/{user_id}", tags=["settings"])

# Module-level storage for dependencies injected at startup
_resolver: RuleResolver | None = None
_meter: TokenUsageMeter | None = None
_users: UserRepository | None = None
_user_settings: UserSettingsRepository | None = None


def set_resolver(resolver: RuleResolver) -> None:
    """Inject the rule resolver (and with it the override and custom-rule repositories).

    Side Effects:
        - Sets module-level _resolver variable
    """
    global _resolver
    _resolver = resolver


def set_meter(meter: TokenUsageMeter) -> None:
    global _meter
    _meter = meter


def set_user_repositories(users: UserRepository, user_settings: UserSettingsRepository) -> None:
    global _users, _user_settings
    _users = users
    _user_settings = user_settings


def _require_resolver() -> RuleResolver:
    if _resolver is None:
        raise HTTPException(status_code=500, detail="Rule resolver not initialized")
    return _resolver


def _require_user(user_id: int) -> User:
    if _users is None:
        raise HTTPException(status_code=500, detail="User repository not initialized")
    user = _users.get(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")
    return user


@router.get("/cleanup-settings")
def list_cleanup_settings(user_id: int) -> list[dict[str, Any]]:
    _require_user(user_id)
    settings = _require_resolver().settings_repo.list_for_user(user_id)
    return [s.model_dump(mode="json") for s in settings]


@router.put("/cleanup-settings/{category}")
def put_cleanup_setting(user_id: int, category: str, body: CleanupSettingUpdate) -> dict[str, Any]:
    """Create or replace the override for one category.

    Side Effects:
        - Writes auto_cleanup_setting
        - Invalidates the user's cached policies
    """
    _require_user(user_id)
    saved = _require_resolver().settings_repo.upsert(
        AutoCleanupSetting(
            user_id=user_id,
            category=category,
            is_disabled=body.is_disabled,
            after_days_old=body.after_days_old,
            cleanup_action=body.cleanup_action,
        )
    )
    log_event("api.cleanup_setting.saved", user_id=user_id, category=category)
    return saved.model_dump(mode="json")


@router.delete("/cleanup-settings/{category}", status_code=status.HTTP_204_NO_CONTENT)
def delete_cleanup_setting(user_id: int, category: str) -> Response:
    _require_user(user_id)
    if not _require_resolver().settings_repo.delete(user_id, category):
        raise HTTPException(status_code=404, detail=f"No override for {category}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/custom-rules")
def list_custom_rules(user_id: int) -> list[dict[str, Any]]:
    _require_user(user_id)
    rules = _require_resolver().rules_repo.list_for_user(user_id)
    return [r.model_dump(mode="json") for r in rules]


@router.post("/custom-rules", status_code=status.HTTP_201_CREATED)
def create_custom_rule(user_id: int, body: CustomRuleCreate) -> dict[str, Any]:
    """Define a custom category.

    Returns 409 if the name collides with a built-in or existing custom category.
    """
    _require_user(user_id)
    try:
        rule = _require_resolver().rules_repo.create(user_id, body.category, body.prompt_content)
    except CategoryConflictError as e:
        log_event("api.custom_rule.conflict", user_id=user_id, category=body.category)
        raise HTTPException(status_code=409, detail=str(e)) from e
    log_event("api.custom_rule.created", user_id=user_id, category=rule.category)
    return rule.model_dump(mode="json")


@router.delete("/custom-rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_custom_rule(user_id: int, rule_id: int) -> Response:
    _require_user(user_id)
    if not _require_resolver().rules_repo.delete(user_id, rule_id):
        raise HTTPException(status_code=404, detail=f"Custom rule {rule_id} not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/settings")
def get_user_settings(user_id: int) -> dict[str, Any]:
    user = _require_user(user_id)
    assert _user_settings is not None
    return _user_settings.get(user.email).model_dump(mode="json")


@router.put("/settings")
def put_user_settings(user_id: int, body: UserSettingsUpdate) -> dict[str, Any]:
    user = _require_user(user_id)
    assert _user_settings is not None
    saved = _user_settings.upsert(
        UserSettings(
            user_email=user.email,
            daily_summary_enabled=body.daily_summary_enabled,
            daily_summary_time=body.daily_summary_time,
            time_zone_offset=body.time_zone_offset,
        )
    )
    return saved.model_dump(mode="json")


@router.get("/policy/{category}")
def get_effective_policy(user_id: int, category: str) -> PolicyResponse:
    _require_user(user_id)
    policy = _require_resolver().resolve_policy(user_id, category)
    return PolicyResponse.build(
        category, policy.is_disabled, policy.after_days_old, policy.cleanup_action
    )


@router.get("/usage")
def get_usage(user_id: int, month: int | None = None, year: int | None = None) -> UsageResponse:
    user = _require_user(user_id)
    if _meter is None:
        raise HTTPException(status_code=500, detail="Token meter not initialized")

    today = _meter.clock().date()
    month = month or today.month
    year = year or today.year
    state = _meter.check(user.email, user.subscription_status)

    return UsageResponse(
        user_email=user.email,
        month=month,
        year=year,
        tokens_this_period=_meter.usage_for_period(user.email, month, year),
        tokens_today=_meter.usage_today(user.email),
        month_limit=state.month_limit,
        quota_exceeded=isinstance(state, QuotaExceeded),
    )
