"""Pydantic models for per-tenant pledge billing settings."""

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field


class PledgeSettingsRead(BaseModel):
    tenant_id: int
    max_failures_before_pause: int
    retry_interval_hours: int
    dunning_email_days: list[int]
    grace_period_days: int
    auto_resume_on_success: bool
    enable_donations: bool
    enable_recurring_pledges: bool

    model_config = ConfigDict(from_attributes=True)


class PledgeSettingsUpdate(BaseModel):
    max_failures_before_pause: int | None = Field(default=None, ge=1, le=10)
    retry_interval_hours: int | None = Field(default=None, ge=1, le=168)
    dunning_email_days: list[Annotated[int, Field(ge=1, le=30)]] | None = None
    grace_period_days: int | None = Field(default=None, ge=0, le=30)
    auto_resume_on_success: bool | None = None
    enable_donations: bool | None = None
    enable_recurring_pledges: bool | None = None
