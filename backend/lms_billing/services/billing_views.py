"""Read models for the billing pages of the panel."""

from __future__ import annotations

import csv
import io
from typing import Callable, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lms_billing.core.config import settings
from lms_billing.core.errors import NotFoundError
from lms_billing.models.enums import CheckoutSessionStatus, SubscriptionBadge
from lms_billing.models.schemas import (
    ActivityRead,
    BillingInfo,
    CheckoutSessionRead,
    MySubscriptionResponse,
    PaymentInfo,
    SubscriptionRead,
)
from lms_billing.models.tables import Subscription, User
from lms_billing.services import activity_log, checkout_sessions, subscription_store
from lms_billing.services.reconciliation import is_admin_granted
from lms_billing.utils.helpers import now_ms


def subscription_read(row: Optional[Subscription]) -> Optional[SubscriptionRead]:
    if row is None:
        return None
    out = SubscriptionRead.model_validate(row)
    out.is_admin_granted = is_admin_granted(row.subscription_id)
    return out


async def get_my_subscription(
    db: AsyncSession,
    user: User,
    *,
    clock: Callable[[], int] = now_ms,
) -> MySubscriptionResponse:
    """The caller's current subscription, only if it still grants access."""
    row = await subscription_store.get_current_for_user(db, user.id)
    if not subscription_store.is_entitled(row, clock()):
        return MySubscriptionResponse(has_subscription=False)
    return MySubscriptionResponse(has_subscription=True, subscription=subscription_read(row))


def total_paid(completed_checkouts: int) -> float:
    """Completed checkouts times the configured price, in major units.

    Zero when no price amount is configured.
    """
    amount = settings.STRIPE_PRICE_AMOUNT
    if not amount or completed_checkouts <= 0:
        return 0.0
    return completed_checkouts * amount / 100


async def get_billing_info(
    db: AsyncSession,
    user_id: int,
    *,
    clock: Callable[[], int] = now_ms,
) -> BillingInfo:
    user = await subscription_store.get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found.")
    history = await subscription_store.list_for_user(db, user_id)
    sessions = await checkout_sessions.list_for_user(db, user_id)
    current = history[0] if history else None
    completed = [s for s in sessions if s.status == CheckoutSessionStatus.COMPLETE]
    activity = await activity_log.list_for_user(db, user_id)
    return BillingInfo(
        user_id=user_id,
        current_subscription=subscription_read(current),
        is_entitled=subscription_store.is_entitled(current, clock()),
        subscription_history=[subscription_read(row) for row in history],
        checkout_history=[CheckoutSessionRead.model_validate(s) for s in sessions],
        payment=PaymentInfo(
            stripe_customer_id=user.stripe_customer_id,
            completed_checkouts=len(completed),
            total_checkouts=len(sessions),
            total_paid=total_paid(len(completed)),
            currency=(settings.STRIPE_PRICE_CURRENCY or "usd").upper(),
            payment_interval=settings.STRIPE_PRICE_INTERVAL,
        ),
        activity=[ActivityRead.model_validate(entry) for entry in activity],
    )


async def get_subscription_status_for_users(
    db: AsyncSession,
    user_ids: Iterable[int],
    *,
    clock: Callable[[], int] = now_ms,
) -> Dict[int, SubscriptionBadge]:
    now = clock()
    statuses: Dict[int, SubscriptionBadge] = {}
    for user_id in dict.fromkeys(user_ids):
        row = await subscription_store.get_current_for_user(db, user_id)
        statuses[user_id] = SubscriptionBadge.ACTIVE if subscription_store.is_entitled(row, now) else SubscriptionBadge.NONE
    return statuses


EXPORT_HEADER = ("Name", "Email", "Subscription Status")


async def export_users_csv(
    db: AsyncSession,
    *,
    clock: Callable[[], int] = now_ms,
) -> str:
    """CSV of learners (no admins, no deleted users, no blank emails) with their access state."""
    now = clock()
    users = await db.scalars(
        select(User)
        .where(User.deleted_at.is_(None), User.is_admin.is_(False))
        .order_by(User.id.asc())
    )
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(EXPORT_HEADER)
    for user in list(users):
        if not user.email:
            continue
        row = await subscription_store.get_current_for_user(db, user.id)
        status = "Active" if subscription_store.is_entitled(row, now) else "Not Active"
        writer.writerow((user.name or "", user.email, status))
    return buf.getvalue()
