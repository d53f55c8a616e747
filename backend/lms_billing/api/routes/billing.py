from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from lms_billing.api.dependencies import get_active_sync, get_user
from lms_billing.core.database import get_db
from lms_billing.core.observability import sentry_breadcrumb
from lms_billing.models.schemas import CheckoutStartResponse, MySubscriptionResponse, PortalResponse, SyncResult
from lms_billing.models.tables import User
from lms_billing.services.active_sync import ActiveSync
from lms_billing.services.billing_views import get_my_subscription
from sqlalchemy.ext.asyncio import AsyncSession

import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/checkout", response_model=CheckoutStartResponse)
async def create_checkout_session(
    price_id: str | None = Body(None, embed=True),
    user: User = Depends(get_user),
    sync: ActiveSync = Depends(get_active_sync),
):
    """Create a Stripe Checkout Session for the authenticated user.

    The session is recorded locally as pending before the URL is returned,
    so the eventual webhook can be attributed to this user.
    """
    started = await sync.start_checkout(user, price_id)
    sentry_breadcrumb(category="stripe", message="checkout.session.created", data={"session_id": started.session_id})
    return started


@router.post("/sync/session", response_model=SyncResult)
async def sync_checkout_session(
    session_id: str = Body(..., embed=True, min_length=1),
    user: User = Depends(get_user),
    sync: ActiveSync = Depends(get_active_sync),
):
    """Reconcile right after the redirect back from Checkout.

    404 when the session is unknown, 403 when it belongs to another user.
    """
    return await sync.sync_by_checkout_session(user, session_id)


@router.post("/sync/subscription", response_model=SyncResult)
async def sync_subscription(
    subscription_id: str = Body(..., embed=True, min_length=1),
    user: User = Depends(get_user),
    sync: ActiveSync = Depends(get_active_sync),
):
    return await sync.resync_subscription(user, subscription_id)


@router.post("/cancel", response_model=SyncResult)
async def cancel_subscription(
    subscription_id: str = Body(..., embed=True, min_length=1),
    user: User = Depends(get_user),
    sync: ActiveSync = Depends(get_active_sync),
):
    """Schedule cancellation at period end (Stripe first, then the local row)."""
    return await sync.cancel_subscription(user, subscription_id)


@router.post("/reactivate", response_model=SyncResult)
async def reactivate_subscription(
    subscription_id: str = Body(..., embed=True, min_length=1),
    user: User = Depends(get_user),
    sync: ActiveSync = Depends(get_active_sync),
):
    return await sync.reactivate_subscription(user, subscription_id)


@router.post("/portal", response_model=PortalResponse)
async def create_portal_session(
    user: User = Depends(get_user),
    sync: ActiveSync = Depends(get_active_sync),
):
    """Return a Stripe Billing Portal URL for the current user."""
    url = await sync.create_portal_session(user)
    return PortalResponse(url=url)


@router.get("/subscription", response_model=MySubscriptionResponse)
async def my_subscription(
    user: User = Depends(get_user),
    db: AsyncSession = Depends(get_db),
):
    """The caller's subscription if it currently grants access."""
    return await get_my_subscription(db, user)
