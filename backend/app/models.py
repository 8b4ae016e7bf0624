"""Database models used by the pledge billing service.

The models are defined with SQLModel (built on SQLAlchemy and Pydantic)
and represent tenants, donors, funds, recurring pledges and the ledger of
charge attempts and donations produced by the scheduler.
"""

from enum import Enum
from typing import Optional, List
from datetime import datetime
from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import Column, JSON


class PledgeFrequency(str, Enum):
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"


class PledgeStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"  # paused after too many failed charges
    COMPLETED = "COMPLETED"


TERMINAL_PLEDGE_STATUSES = (PledgeStatus.CANCELLED, PledgeStatus.COMPLETED)


class ChargeStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class Tenant(SQLModel, table=True):
    """Community that owns funds, members and pledges."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class User(SQLModel, table=True):
    """Member of a tenant. Donors and tenant admins are both users."""
    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: int = Field(foreign_key="tenant.id", index=True)
    name: str
    email: str = Field(unique=True, index=True)
    password_hash: str
    role: str = "member"  # 'member' or 'admin'
    status: str = "active"  # 'active' or 'pending'

    pledges: List["Pledge"] = Relationship(back_populates="donor")


class Fund(SQLModel, table=True):
    """Designated giving fund that pledges are made towards."""
    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: int = Field(foreign_key="tenant.id", index=True)
    name: str
    currency: str = "USD"
    min_amount_cents: Optional[int] = None
    max_amount_cents: Optional[int] = None
    archived_at: Optional[datetime] = None


class Pledge(SQLModel, table=True):
    """A donor's standing commitment to give a fixed amount on a cadence."""
    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: int = Field(foreign_key="tenant.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    fund_id: int = Field(foreign_key="fund.id")

    amount_cents: int
    currency: str = "USD"
    frequency: PledgeFrequency
    start_date: datetime
    end_date: Optional[datetime] = None

    next_charge_at: datetime = Field(index=True)
    last_charged_at: Optional[datetime] = None
    last_failed_at: Optional[datetime] = None
    last_failure_reason: Optional[str] = None

    status: PledgeStatus = Field(default=PledgeStatus.ACTIVE, index=True)
    failure_count: int = 0
    # Running sums over successful charges only; never decremented.
    total_charges_count: int = 0
    total_amount_cents: int = 0

    payment_method_token: Optional[str] = None
    payment_method_last4: Optional[str] = None
    payment_method_brand: Optional[str] = None

    is_anonymous: bool = False
    dedication_note: Optional[str] = None

    # Set while a scheduler worker owns the pledge.
    claimed_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    donor: User = Relationship(back_populates="pledges")
    fund: Fund = Relationship()
    charges: List["PledgeCharge"] = Relationship(back_populates="pledge")


class PledgeCharge(SQLModel, table=True):
    """Ledger entry for one attempt to collect one cycle of a pledge."""
    id: Optional[int] = Field(default=None, primary_key=True)
    pledge_id: int = Field(foreign_key="pledge.id", index=True)
    # Snapshot of the pledge terms at attempt time.
    amount_cents: int
    currency: str
    status: ChargeStatus = Field(default=ChargeStatus.PENDING, index=True)
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    attempt_count: int = 0
    charged_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    pledge: Pledge = Relationship(back_populates="charges")


class DonationRecord(SQLModel, table=True):
    """Donor-facing gift entry created for every successful charge."""
    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: int = Field(foreign_key="tenant.id", index=True)
    user_id: int = Field(foreign_key="user.id")
    fund_id: int = Field(foreign_key="fund.id")
    pledge_id: Optional[int] = Field(default=None, foreign_key="pledge.id")
    charge_id: Optional[int] = Field(default=None, foreign_key="pledgecharge.id")
    display_name: str
    amount: float  # major currency units
    amount_cents: int
    currency: str
    is_anonymous: bool = False
    designation_note: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class PledgeSettings(SQLModel, table=True):
    """Per-tenant pledge billing policy."""
    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: int = Field(foreign_key="tenant.id", unique=True)
    max_failures_before_pause: int = 3
    retry_interval_hours: int = 24
    # Dunning policy, stored and returned as configured.
    dunning_email_days: List[int] = Field(
        sa_column=Column(JSON), default_factory=lambda: [3, 7, 14]
    )
    grace_period_days: int = 7
    auto_resume_on_success: bool = True
    # Pledge endpoints are closed until an admin turns both on.
    enable_donations: bool = False
    enable_recurring_pledges: bool = False
