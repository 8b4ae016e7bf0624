"""Schemas for recurring pledges, their charges and scheduler outcomes."""

from datetime import datetime, timezone
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from app.models import ChargeStatus, PledgeFrequency, PledgeStatus


def _as_naive_utc(value: datetime) -> datetime:
    """Convert offset-aware input to the naive UTC datetimes stored in the database."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_as_naive_utc)]


class PledgeBase(BaseModel):
    fund_id: int
    amount_cents: int = Field(gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    frequency: PledgeFrequency
    end_date: Optional[UtcDatetime] = None
    is_anonymous: bool = False
    dedication_note: Optional[str] = Field(default=None, max_length=500)


class PledgeCreate(PledgeBase):
    start_date: UtcDatetime
    payment_method_token: Optional[str] = None
    payment_method_last4: Optional[str] = Field(default=None, max_length=4)
    payment_method_brand: Optional[str] = None


class PledgeRead(PledgeBase):
    id: int
    tenant_id: int
    user_id: int
    start_date: datetime
    status: PledgeStatus
    next_charge_at: datetime
    last_charged_at: Optional[datetime] = None
    last_failed_at: Optional[datetime] = None
    last_failure_reason: Optional[str] = None
    failure_count: int
    total_charges_count: int
    total_amount_cents: int
    payment_method_last4: Optional[str] = None
    payment_method_brand: Optional[str] = None
    paused_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PledgeChargeRead(BaseModel):
    id: int
    pledge_id: int
    amount_cents: int
    currency: str
    status: ChargeStatus
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    attempt_count: int
    charged_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PledgeDetail(PledgeRead):
    charges: list[PledgeChargeRead] = []


class PledgePage(BaseModel):
    pledges: list[PledgeRead]
    page: int
    limit: int
    total: int
    total_pages: int


class PledgeAdminOverride(BaseModel):
    next_charge_at: Optional[UtcDatetime] = None
    status: Optional[PledgeStatus] = None
    failure_count: Optional[int] = Field(default=None, ge=0)


class PledgeUpdate(BaseModel):
    amount_cents: Optional[int] = Field(default=None, gt=0)
    frequency: Optional[PledgeFrequency] = None
    fund_id: Optional[int] = None
    end_date: Optional[UtcDatetime] = None
    payment_method_token: Optional[str] = None
    payment_method_last4: Optional[str] = Field(default=None, max_length=4)
    payment_method_brand: Optional[str] = None
    is_anonymous: Optional[bool] = None
    dedication_note: Optional[str] = Field(default=None, max_length=500)
    admin_override: Optional[PledgeAdminOverride] = None


class ChargeOutcome(BaseModel):
    """Result of one billing attempt reported by the scheduler."""

    pledge_id: int
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None
