"""Charge calendar for recurring pledges."""

from datetime import datetime

from dateutil.relativedelta import relativedelta

from app.models import PledgeFrequency

# relativedelta clamps month arithmetic to the last day of shorter months,
# so Jan 31 + 1 month is Feb 28/29 rather than early March.
_FREQUENCY_STEPS = {
    PledgeFrequency.WEEKLY: relativedelta(days=7),
    PledgeFrequency.BIWEEKLY: relativedelta(days=14),
    PledgeFrequency.MONTHLY: relativedelta(months=1),
    PledgeFrequency.QUARTERLY: relativedelta(months=3),
    PledgeFrequency.YEARLY: relativedelta(years=1),
}


def next_charge_date(from_date: datetime, frequency: PledgeFrequency) -> datetime:
    """Return the charge date one ``frequency`` period after ``from_date``."""
    return from_date + _FREQUENCY_STEPS[PledgeFrequency(frequency)]
