"""Convenience imports for all schema classes used by the API."""

from .user import UserCreate, UserResponse, UserLogin
from .fund import FundCreate, FundRead
from .settings import PledgeSettingsRead, PledgeSettingsUpdate
from .pledge import (
    PledgeCreate,
    PledgeRead,
    PledgeDetail,
    PledgePage,
    PledgeUpdate,
    PledgeAdminOverride,
    PledgeChargeRead,
    ChargeOutcome,
)

__all__ = [
    "UserCreate",
    "UserResponse",
    "UserLogin",
    "FundCreate",
    "FundRead",
    "PledgeSettingsRead",
    "PledgeSettingsUpdate",
    "PledgeCreate",
    "PledgeRead",
    "PledgeDetail",
    "PledgePage",
    "PledgeUpdate",
    "PledgeAdminOverride",
    "PledgeChargeRead",
    "ChargeOutcome",
]
