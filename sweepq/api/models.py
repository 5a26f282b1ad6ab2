"""Request and response models for the settings API"""

from __future__ import annotations

import math

from pydantic import BaseModel, Field, field_validator

from sweepq.storage.models import CleanupAction
from sweepq.utils.time import parse_utc_offset, parse_wall_clock


class CleanupSettingUpdate(BaseModel):
    is_disabled: bool = False
    after_days_old: int = Field(default=7, ge=0)
    cleanup_action: CleanupAction = CleanupAction.NOTHING


class CustomRuleCreate(BaseModel):
    category: str = Field(min_length=1, max_length=100)
    prompt_content: str = Field(min_length=1, max_length=2000)

    @field_validator("category")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("category must not be blank")
        return value


class UserSettingsUpdate(BaseModel):
    daily_summary_enabled: bool = True
    daily_summary_time: str = "06:00"
    time_zone_offset: str = "-08"

    @field_validator("daily_summary_time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        parse_wall_clock(value)
        return value

    @field_validator("time_zone_offset")
    @classmethod
    def _check_offset(cls, value: str) -> str:
        parse_utc_offset(value)
        return value


class PolicyResponse(BaseModel):
    category: str
    is_disabled: bool
    # None means the policy never acts on age (fallback for unknown categories)
    after_days_old: int | None
    cleanup_action: CleanupAction

    @classmethod
    def build(
        cls, category: str, is_disabled: bool, after_days_old: float, action: CleanupAction
    ) -> PolicyResponse:
        return cls(
            category=category,
            is_disabled=is_disabled,
            after_days_old=None if math.isinf(after_days_old) else int(after_days_old),
            cleanup_action=action,
        )


class UsageResponse(BaseModel):
    user_email: str
    month: int
    year: int
    tokens_this_period: int
    tokens_today: int
    month_limit: int
    quota_exceeded: bool
