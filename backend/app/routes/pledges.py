import logging
import math
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_session, get_session_factory
from app.models import (
    ChargeStatus,
    Pledge,
    PledgeStatus,
    TERMINAL_PLEDGE_STATUSES,
    User,
)
from app.schemas import (
    ChargeOutcome,
    PledgeChargeRead,
    PledgeCreate,
    PledgeDetail,
    PledgePage,
    PledgeRead,
    PledgeUpdate,
)
from app.crud import (
    create_pledge,
    get_active_fund,
    get_charge,
    get_charges_by_pledge,
    get_pledge_settings,
    get_tenant_pledge,
    list_pledges,
    mark_charge_failed,
    save_charge,
    save_pledge,
)
from app.auth import get_tenant_admin, get_tenant_member, is_tenant_admin
from app.frequency import next_charge_date
from app.gateway import PaymentGateway, get_payment_gateway
from app.notifications import Notifier, get_notifier
from app.pledge_scheduler import process_due_pledges, retry_failed_pledges

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants/{tenant_id}/pledges", tags=["pledges"])

VOIDED_CHARGE_REASON = "Voided by administrator"


async def _require_pledges_enabled(db: AsyncSession, tenant_id: int) -> None:
    settings = await get_pledge_settings(db, tenant_id)
    if not (settings.enable_donations and settings.enable_recurring_pledges):
        raise HTTPException(
            status_code=403,
            detail="Recurring pledges are not enabled for this tenant",
        )


async def _validate_fund(
    db: AsyncSession, tenant_id: int, fund_id: int, amount_cents: int
) -> None:
    fund = await get_active_fund(db, tenant_id, fund_id)
    if not fund:
        raise HTTPException(status_code=400, detail="Fund not found or is archived")
    if fund.min_amount_cents and amount_cents < fund.min_amount_cents:
        raise HTTPException(
            status_code=400,
            detail=f"Minimum amount is {fund.min_amount_cents / 100:.2f} {fund.currency}",
        )
    if fund.max_amount_cents and amount_cents > fund.max_amount_cents:
        raise HTTPException(
            status_code=400,
            detail=f"Maximum amount is {fund.max_amount_cents / 100:.2f} {fund.currency}",
        )


async def _get_owned_pledge(
    db: AsyncSession, tenant_id: int, pledge_id: int, user: User
) -> Pledge:
    """Load a pledge the user owns, or any tenant pledge for admins."""
    pledge = await get_tenant_pledge(db, tenant_id, pledge_id)
    if not pledge:
        raise HTTPException(status_code=404, detail="Pledge not found")
    if pledge.user_id != user.id and not is_tenant_admin(tenant_id, user):
        raise HTTPException(status_code=403, detail="Not authorized")
    return pledge


@router.post("/", response_model=PledgeRead, status_code=status.HTTP_201_CREATED)
async def add_pledge(
    tenant_id: int,
    data: PledgeCreate,
    db: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_tenant_member),
):
    await _require_pledges_enabled(db, tenant_id)
    await _validate_fund(db, tenant_id, data.fund_id, data.amount_cents)
    if data.end_date is not None and data.end_date <= data.start_date:
        raise HTTPException(status_code=400, detail="End date must be after start date")
    pledge = Pledge(
        tenant_id=tenant_id,
        user_id=current_user.id,
        next_charge_at=next_charge_date(data.start_date, data.frequency),
        status=PledgeStatus.ACTIVE,
        **data.model_dump(),
    )
    new_pledge = await create_pledge(db, pledge)
    logger.info(
        "Pledge %s created in tenant %s by user %s", new_pledge.id, tenant_id, current_user.id
    )
    return new_pledge


@router.get("/", response_model=PledgePage)
async def list_tenant_pledges(
    tenant_id: int,
    status_filter: Optional[PledgeStatus] = Query(default=None, alias="status"),
    fund_id: Optional[int] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_tenant_member),
):
    """Admins see every pledge in the tenant; members see their own."""
    await _require_pledges_enabled(db, tenant_id)
    user_id = None if is_tenant_admin(tenant_id, current_user) else current_user.id
    pledges, total = await list_pledges(
        db,
        tenant_id,
        user_id=user_id,
        status=status_filter,
        fund_id=fund_id,
        offset=(page - 1) * limit,
        limit=limit,
    )
    return PledgePage(
        pledges=[PledgeRead.model_validate(p) for p in pledges],
        page=page,
        limit=limit,
        total=total,
        total_pages=math.ceil(total / limit),
    )


@router.post("/process", response_model=List[ChargeOutcome])
async def run_due_pledges(
    tenant_id: int,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
    current_user: User = Depends(get_tenant_admin),
):
    """Run the due-pledge scheduler for this tenant immediately."""
    logger.info("User %s triggered pledge processing for tenant %s", current_user.id, tenant_id)
    return await process_due_pledges(
        session_factory, tenant_id, gateway=gateway, notifier=notifier
    )


@router.post("/retry", response_model=List[ChargeOutcome])
async def run_retry_sweep(
    tenant_id: int,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
    current_user: User = Depends(get_tenant_admin),
):
    """Run the retry sweep for this tenant immediately."""
    logger.info("User %s triggered pledge retries for tenant %s", current_user.id, tenant_id)
    return await retry_failed_pledges(
        session_factory, tenant_id, gateway=gateway, notifier=notifier
    )


@router.get("/{pledge_id}", response_model=PledgeDetail)
async def read_pledge(
    tenant_id: int,
    pledge_id: int,
    db: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_tenant_member),
):
    pledge = await _get_owned_pledge(db, tenant_id, pledge_id, current_user)
    charges = await get_charges_by_pledge(db, pledge.id)
    return PledgeDetail(
        **PledgeRead.model_validate(pledge).model_dump(),
        charges=[PledgeChargeRead.model_validate(c) for c in charges],
    )


@router.put("/{pledge_id}", response_model=PledgeRead)
async def update_pledge(
    tenant_id: int,
    pledge_id: int,
    data: PledgeUpdate,
    db: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_tenant_member),
):
    pledge = await _get_owned_pledge(db, tenant_id, pledge_id, current_user)

    if data.admin_override is not None:
        if not is_tenant_admin(tenant_id, current_user):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        for field, value in data.admin_override.model_dump(exclude_none=True).items():
            setattr(pledge, field, value)
        updated = await save_pledge(db, pledge)
        logger.info("Admin %s overrode pledge %s", current_user.id, pledge_id)
        return updated

    if pledge.status in TERMINAL_PLEDGE_STATUSES:
        raise HTTPException(status_code=400, detail="Pledge can no longer be changed")
    changes = data.model_dump(exclude_unset=True, exclude={"admin_override"})
    if "fund_id" in changes or "amount_cents" in changes:
        await _validate_fund(
            db,
            tenant_id,
            changes.get("fund_id") or pledge.fund_id,
            changes.get("amount_cents") or pledge.amount_cents,
        )
    for field, value in changes.items():
        if value is None and field not in ("end_date", "dedication_note"):
            continue
        setattr(pledge, field, value)
    updated = await save_pledge(db, pledge)
    logger.info("Pledge %s updated by user %s", pledge_id, current_user.id)
    return updated


@router.delete("/{pledge_id}", response_model=PledgeRead)
async def cancel_pledge(
    tenant_id: int,
    pledge_id: int,
    db: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_tenant_member),
):
    """Cancel a pledge; pledges are never deleted."""
    pledge = await _get_owned_pledge(db, tenant_id, pledge_id, current_user)
    if pledge.status in TERMINAL_PLEDGE_STATUSES:
        raise HTTPException(status_code=400, detail="Pledge is already closed")
    pledge.status = PledgeStatus.CANCELLED
    pledge.cancelled_at = datetime.utcnow()
    cancelled = await save_pledge(db, pledge)
    logger.info("Pledge %s cancelled by user %s", pledge_id, current_user.id)
    return cancelled


@router.post("/{pledge_id}/resume", response_model=PledgeRead)
async def resume_pledge(
    tenant_id: int,
    pledge_id: int,
    db: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_tenant_member),
):
    """Reactivate a paused or failed pledge starting a fresh cycle from today."""
    pledge = await _get_owned_pledge(db, tenant_id, pledge_id, current_user)
    if pledge.status not in (PledgeStatus.PAUSED, PledgeStatus.FAILED):
        raise HTTPException(
            status_code=400, detail="Only paused or failed pledges can be resumed"
        )
    pledge.status = PledgeStatus.ACTIVE
    pledge.paused_at = None
    pledge.failure_count = 0
    pledge.next_charge_at = next_charge_date(datetime.utcnow(), pledge.frequency)
    resumed = await save_pledge(db, pledge)
    logger.info("Pledge %s resumed by user %s", pledge_id, current_user.id)
    return resumed


@router.post("/{pledge_id}/charges/{charge_id}/void", response_model=PledgeChargeRead)
async def void_pending_charge(
    tenant_id: int,
    pledge_id: int,
    charge_id: int,
    db: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_tenant_admin),
):
    """Resolve a charge left pending by an interrupted attempt.

    The pledge's failure counters are not touched because the outcome of
    the interrupted attempt is unknown.
    """
    pledge = await get_tenant_pledge(db, tenant_id, pledge_id)
    charge = await get_charge(db, charge_id)
    if not pledge or not charge or charge.pledge_id != pledge.id:
        raise HTTPException(status_code=404, detail="Charge not found")
    if charge.status != ChargeStatus.PENDING:
        raise HTTPException(status_code=400, detail="Only pending charges can be voided")
    mark_charge_failed(charge, VOIDED_CHARGE_REASON, datetime.utcnow())
    voided = await save_charge(db, charge)
    logger.warning(
        "Pending charge %s of pledge %s voided by user %s", charge_id, pledge_id, current_user.id
    )
    return voided
