"""Schemas for giving funds."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class FundCreate(BaseModel):
    name: str
    currency: str = Field(default="USD", min_length=3, max_length=3)
    min_amount_cents: Optional[int] = Field(default=None, gt=0)
    max_amount_cents: Optional[int] = Field(default=None, gt=0)


class FundRead(FundCreate):
    id: int
    tenant_id: int

    model_config = ConfigDict(from_attributes=True)
