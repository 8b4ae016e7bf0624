"""Endpoints for viewing and updating a tenant's pledge billing settings."""

import logging
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_session
from app.models import User
from app.auth import get_tenant_admin
from app.schemas import PledgeSettingsRead, PledgeSettingsUpdate
from app.crud import get_pledge_settings, save_pledge_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants/{tenant_id}/pledge-settings", tags=["settings"])


@router.get("/", response_model=PledgeSettingsRead)
async def read_pledge_settings(
    tenant_id: int,
    db: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_tenant_admin),
):
    """Retrieve the tenant's policy, falling back to defaults."""
    return await get_pledge_settings(db, tenant_id)


@router.put("/", response_model=PledgeSettingsRead)
async def update_pledge_settings(
    tenant_id: int,
    data: PledgeSettingsUpdate,
    db: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_tenant_admin),
):
    """Update settings; only tenant admins may change the policy."""
    settings = await get_pledge_settings(db, tenant_id)
    for field, value in data.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(settings, field, value)
    updated = await save_pledge_settings(db, settings)
    logger.info("Pledge settings for tenant %s updated by user %s", tenant_id, current_user.id)
    return updated
