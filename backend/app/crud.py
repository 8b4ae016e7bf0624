"""Asynchronous CRUD helpers for the application's data models.

Each function in this module encapsulates a specific database operation
using SQLModel and SQLAlchemy.  Centralizing the logic keeps route
handlers and the pledge scheduler light and makes behavior easier to test.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select
from sqlalchemy import func, or_, update
from datetime import datetime, timedelta
from app.models import (
    Tenant,
    User,
    Fund,
    Pledge,
    PledgeCharge,
    PledgeSettings,
    PledgeStatus,
    ChargeStatus,
    DonationRecord,
)
from app.auth import get_password_hash


# --- Tenant and user helpers ----------------------------------------------


async def create_tenant(db: AsyncSession, tenant: Tenant) -> Tenant:
    db.add(tenant)
    await db.commit()
    await db.refresh(tenant)
    return tenant


async def get_tenant(db: AsyncSession, tenant_id: int) -> Tenant | None:
    result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def create_user(db: AsyncSession, user: User) -> User:
    """Create a new user, hashing the password if it is still plain text."""

    if not user.password_hash.startswith("$2b$"):
        user.password_hash = get_password_hash(user.password_hash)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    """Return a user by email or ``None`` if not found."""
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def get_user(db: AsyncSession, user_id: int) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def count_tenant_users(db: AsyncSession, tenant_id: int) -> int:
    result = await db.execute(
        select(func.count()).select_from(User).where(User.tenant_id == tenant_id)
    )
    return result.scalar()


# --- Fund helpers -----------------------------------------------------------


async def create_fund(db: AsyncSession, fund: Fund) -> Fund:
    db.add(fund)
    await db.commit()
    await db.refresh(fund)
    return fund


async def get_fund(db: AsyncSession, fund_id: int) -> Fund | None:
    result = await db.execute(select(Fund).where(Fund.id == fund_id))
    return result.scalar_one_or_none()


async def get_active_fund(
    db: AsyncSession, tenant_id: int, fund_id: int
) -> Fund | None:
    """Return a non-archived fund belonging to ``tenant_id``."""
    result = await db.execute(
        select(Fund).where(
            Fund.id == fund_id,
            Fund.tenant_id == tenant_id,
            Fund.archived_at == None,  # noqa: E711
        )
    )
    return result.scalar_one_or_none()


async def get_active_funds(db: AsyncSession, tenant_id: int) -> list[Fund]:
    result = await db.execute(
        select(Fund)
        .where(Fund.tenant_id == tenant_id, Fund.archived_at == None)  # noqa: E711
        .order_by(Fund.name)
    )
    return result.scalars().all()


# --- Pledge helpers ---------------------------------------------------------


async def create_pledge(db: AsyncSession, pledge: Pledge) -> Pledge:
    """Store a new pledge definition."""

    db.add(pledge)
    await db.commit()
    await db.refresh(pledge)
    return pledge


async def get_pledge(db: AsyncSession, pledge_id: int) -> Pledge | None:
    """Fetch a pledge by id."""
    result = await db.execute(select(Pledge).where(Pledge.id == pledge_id))
    return result.scalar_one_or_none()


async def get_tenant_pledge(
    db: AsyncSession, tenant_id: int, pledge_id: int
) -> Pledge | None:
    result = await db.execute(
        select(Pledge).where(Pledge.id == pledge_id, Pledge.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def list_pledges(
    db: AsyncSession,
    tenant_id: int,
    *,
    user_id: int | None = None,
    status: PledgeStatus | None = None,
    fund_id: int | None = None,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[Pledge], int]:
    """Return one page of a tenant's pledges (newest first) and the total count."""

    conditions = [Pledge.tenant_id == tenant_id]
    if user_id is not None:
        conditions.append(Pledge.user_id == user_id)
    if status is not None:
        conditions.append(Pledge.status == status)
    if fund_id is not None:
        conditions.append(Pledge.fund_id == fund_id)

    result = await db.execute(
        select(Pledge)
        .where(*conditions)
        .order_by(Pledge.created_at.desc(), Pledge.id.desc())
        .offset(offset)
        .limit(limit)
    )
    pledges = result.scalars().all()
    count_result = await db.execute(
        select(func.count()).select_from(Pledge).where(*conditions)
    )
    return pledges, count_result.scalar()


async def save_pledge(db: AsyncSession, pledge: Pledge) -> Pledge:
    db.add(pledge)
    await db.commit()
    await db.refresh(pledge)
    return pledge


async def claim_pledge(
    db: AsyncSession, pledge_id: int, stale_after: timedelta
) -> datetime | None:
    """Atomically mark a pledge as owned by the caller.

    The claim is stamped with the wall-clock time and succeeds when nobody
    holds it or the existing stamp is older than ``stale_after``.  Returns
    the stamp on success, which the caller passes back to release it, or
    ``None`` when another worker holds the pledge.
    """

    stamp = datetime.utcnow()
    result = await db.execute(
        update(Pledge)
        .where(
            Pledge.id == pledge_id,
            or_(
                Pledge.claimed_at == None,  # noqa: E711
                Pledge.claimed_at < stamp - stale_after,
            ),
        )
        .values(claimed_at=stamp)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return stamp if result.rowcount == 1 else None


async def release_pledge_claim(
    db: AsyncSession, pledge_id: int, stamp: datetime
) -> bool:
    """Clear the claim only if it still carries ``stamp``.

    Returns ``False`` when the claim was taken over by another worker.
    """

    await db.rollback()
    result = await db.execute(
        update(Pledge)
        .where(Pledge.id == pledge_id, Pledge.claimed_at == stamp)
        .values(claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def get_due_pledge_ids(
    db: AsyncSession, now: datetime, tenant_id: int | None = None
) -> list[int]:
    """Ids of active pledges whose next charge date has arrived, oldest first."""

    query = select(Pledge.id).where(
        Pledge.status == PledgeStatus.ACTIVE,
        Pledge.next_charge_at <= now,
    )
    if tenant_id is not None:
        query = query.where(Pledge.tenant_id == tenant_id)
    result = await db.execute(query.order_by(Pledge.next_charge_at, Pledge.id))
    return list(result.scalars().all())


async def get_retry_pledge_ids(
    db: AsyncSession, now: datetime, tenant_id: int | None = None
) -> list[int]:
    """Ids of failed-but-active pledges whose tenant retry interval has elapsed.

    Pledges are ordered by their last failure, oldest first.
    """

    query = select(Pledge).where(
        Pledge.status == PledgeStatus.ACTIVE,
        Pledge.failure_count > 0,
        Pledge.last_failed_at != None,  # noqa: E711
        Pledge.last_failed_at <= now,
    )
    if tenant_id is not None:
        query = query.where(Pledge.tenant_id == tenant_id)
    result = await db.execute(query.order_by(Pledge.last_failed_at, Pledge.id))
    candidates = result.scalars().all()

    intervals: dict[int, int] = {}
    eligible = []
    for pledge in candidates:
        if pledge.tenant_id not in intervals:
            settings = await get_pledge_settings(db, pledge.tenant_id)
            intervals[pledge.tenant_id] = settings.retry_interval_hours
        threshold = now - timedelta(hours=intervals[pledge.tenant_id])
        if pledge.last_failed_at <= threshold:
            eligible.append(pledge.id)
    return eligible


# --- Pledge settings --------------------------------------------------------


async def get_pledge_settings(db: AsyncSession, tenant_id: int) -> PledgeSettings:
    """Return the tenant's pledge policy, or unsaved defaults if none exist."""
    result = await db.execute(
        select(PledgeSettings).where(PledgeSettings.tenant_id == tenant_id)
    )
    settings = result.scalar_one_or_none()
    if not settings:
        settings = PledgeSettings(tenant_id=tenant_id)
    return settings


async def save_pledge_settings(
    db: AsyncSession, settings: PledgeSettings
) -> PledgeSettings:
    """Persist settings changes and return the refreshed object."""
    db.add(settings)
    await db.commit()
    await db.refresh(settings)
    return settings


# --- Charge ledger ----------------------------------------------------------


async def create_pending_charge(db: AsyncSession, pledge: Pledge) -> PledgeCharge:
    """Record a charge attempt before the gateway is called."""

    charge = PledgeCharge(
        pledge_id=pledge.id,
        amount_cents=pledge.amount_cents,
        currency=pledge.currency,
        status=ChargeStatus.PENDING,
    )
    db.add(charge)
    await db.commit()
    await db.refresh(charge)
    return charge


def mark_charge_succeeded(
    charge: PledgeCharge, transaction_id: str, when: datetime
) -> None:
    charge.status = ChargeStatus.SUCCESS
    charge.transaction_id = transaction_id
    charge.charged_at = when


def mark_charge_failed(charge: PledgeCharge, reason: str, when: datetime) -> None:
    charge.status = ChargeStatus.FAILED
    charge.failure_reason = reason
    charge.failed_at = when
    charge.attempt_count += 1


async def get_charge(db: AsyncSession, charge_id: int) -> PledgeCharge | None:
    result = await db.execute(select(PledgeCharge).where(PledgeCharge.id == charge_id))
    return result.scalar_one_or_none()


async def get_pending_charge(
    db: AsyncSession, pledge_id: int
) -> PledgeCharge | None:
    """Return an unresolved charge for the pledge, if one exists."""
    result = await db.execute(
        select(PledgeCharge)
        .where(
            PledgeCharge.pledge_id == pledge_id,
            PledgeCharge.status == ChargeStatus.PENDING,
        )
        .order_by(PledgeCharge.created_at)
    )
    return result.scalars().first()


async def get_charges_by_pledge(
    db: AsyncSession, pledge_id: int
) -> list[PledgeCharge]:
    """List a pledge's charge history, newest first."""
    result = await db.execute(
        select(PledgeCharge)
        .where(PledgeCharge.pledge_id == pledge_id)
        .order_by(PledgeCharge.created_at.desc(), PledgeCharge.id.desc())
    )
    return result.scalars().all()


async def save_charge(db: AsyncSession, charge: PledgeCharge) -> PledgeCharge:
    db.add(charge)
    await db.commit()
    await db.refresh(charge)
    return charge


# --- Donation records -------------------------------------------------------


def build_donation_record(
    pledge: Pledge, charge: PledgeCharge, donor: User | None
) -> DonationRecord:
    """Donor-facing gift entry for a successful charge."""

    if pledge.is_anonymous or donor is None or not donor.name:
        display_name = "Anonymous"
    else:
        display_name = donor.name
    return DonationRecord(
        tenant_id=pledge.tenant_id,
        user_id=pledge.user_id,
        fund_id=pledge.fund_id,
        pledge_id=pledge.id,
        charge_id=charge.id,
        display_name=display_name,
        amount=charge.amount_cents / 100,
        amount_cents=charge.amount_cents,
        currency=charge.currency,
        is_anonymous=pledge.is_anonymous,
        designation_note=pledge.dedication_note,
        message="Recurring pledge payment",
    )


async def get_donations_by_pledge(
    db: AsyncSession, pledge_id: int
) -> list[DonationRecord]:
    result = await db.execute(
        select(DonationRecord)
        .where(DonationRecord.pledge_id == pledge_id)
        .order_by(DonationRecord.created_at)
    )
    return result.scalars().all()
