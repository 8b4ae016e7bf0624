import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_session
from app.models import Fund, User
from app.schemas import FundCreate, FundRead
from app.crud import create_fund, get_active_funds
from app.auth import get_tenant_admin, get_tenant_member

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants/{tenant_id}/funds", tags=["funds"])


@router.get("/", response_model=List[FundRead])
async def list_funds(
    tenant_id: int,
    db: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_tenant_member),
):
    return await get_active_funds(db, tenant_id)


@router.post("/", response_model=FundRead)
async def add_fund(
    tenant_id: int,
    data: FundCreate,
    db: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_tenant_admin),
):
    if (
        data.min_amount_cents is not None
        and data.max_amount_cents is not None
        and data.min_amount_cents > data.max_amount_cents
    ):
        raise HTTPException(
            status_code=400, detail="Minimum amount exceeds maximum amount"
        )
    fund = await create_fund(db, Fund(tenant_id=tenant_id, **data.model_dump()))
    logger.info("Fund %s created in tenant %s by user %s", fund.id, tenant_id, current_user.id)
    return fund
