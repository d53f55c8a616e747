from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from lms_billing.api.dependencies import get_active_sync, require_admin
from lms_billing.core.database import get_db
from lms_billing.models.schemas import (
    AdminGrantRequest,
    BillingInfo,
    StatusBadges,
    StatusBadgesRequest,
    SubscriptionRead,
    SyncResult,
)
from lms_billing.models.tables import User
from lms_billing.services.active_sync import ActiveSync
from lms_billing.services.admin_grant import grant_subscription
from lms_billing.services.billing_views import (
    export_users_csv,
    get_billing_info,
    get_subscription_status_for_users,
    subscription_read,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/billing", tags=["admin-billing"])


@router.post("/grant", response_model=SubscriptionRead, status_code=201)
async def admin_grant(
    body: AdminGrantRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Grant a comped subscription; 409 ``ALREADY_HAS_SUBSCRIPTION`` if one is live."""
    row = await grant_subscription(db, body.user_id, body.duration_days, granted_by=admin.id)
    return subscription_read(row)


@router.post("/users/{user_id}/sync", response_model=SyncResult)
async def admin_sync_user(
    user_id: int,
    admin: User = Depends(require_admin),
    sync: ActiveSync = Depends(get_active_sync),
):
    return await sync.admin_sync_user(user_id)


@router.get("/users/{user_id}", response_model=BillingInfo)
async def admin_billing_info(
    user_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await get_billing_info(db, user_id)


@router.post("/statuses", response_model=StatusBadges)
async def admin_subscription_statuses(
    body: StatusBadgesRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Active/none badge per user for list views."""
    statuses = await get_subscription_status_for_users(db, body.user_ids)
    return StatusBadges(statuses=statuses)


@router.get("/export")
async def admin_export_users(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """CSV download of learners with their current access state."""
    body = await export_users_csv(db)
    logger.info("[billing] user export by admin=%s", admin.id)
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="users.csv"'},
    )
