"""Admin-granted (comped) subscriptions.

These rows never touch Stripe. Their ids start with ``admin-grant-`` so
the webhook gateway and the sync actions can recognise them and skip
provider calls.
"""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from lms_billing.core.config import settings
from lms_billing.core.errors import AlreadyHasSubscriptionError, NotFoundError
from lms_billing.models.enums import GRANT_ACTION, SubscriptionStatus
from lms_billing.models.tables import Subscription
from lms_billing.services import activity_log, subscription_store
from lms_billing.services.reconciliation import ADMIN_GRANT_PREFIX
from lms_billing.utils.helpers import days_to_ms, now_ms

logger = logging.getLogger(__name__)


def admin_grant_ids(user_id: int, now: int) -> tuple[str, str]:
    """``(subscription_id, customer_id)`` for a grant issued at ``now``."""
    return f"{ADMIN_GRANT_PREFIX}{user_id}-{now}", f"{ADMIN_GRANT_PREFIX}{user_id}"


async def grant_subscription(
    db: AsyncSession,
    user_id: int,
    duration_days: int | None = None,
    *,
    granted_by: int | None = None,
    clock: Callable[[], int] = now_ms,
) -> Subscription:
    days = duration_days if duration_days is not None else settings.ADMIN_GRANT_DEFAULT_DAYS
    if days <= 0:
        raise ValueError("duration_days must be positive")
    user = await subscription_store.get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found.")

    now = clock()
    current = await subscription_store.get_current_for_user(db, user_id)
    if subscription_store.is_entitled(current, now):
        raise AlreadyHasSubscriptionError("User already has an active subscription.")

    subscription_id, customer_id = admin_grant_ids(user_id, now)
    row_id = await subscription_store.upsert_subscription(
        db,
        subscription_id=subscription_id,
        user_id=user_id,
        customer_id=customer_id,
        status=SubscriptionStatus.ACTIVE,
        period_start=now,
        period_end=now + days_to_ms(days),
        cancel_at_period_end=False,
        canceled_at=None,
        clock=clock,
        commit=False,
    )
    # Grant and its audit entry land in one transaction
    await activity_log.record_activity(
        db,
        user_id=user_id,
        action=GRANT_ACTION,
        actor_user_id=granted_by,
        subscription_id=subscription_id,
        details={"duration_days": days, "period_end": now + days_to_ms(days)},
        clock=clock,
        commit=False,
    )
    await db.commit()
    logger.info("[billing] admin grant sub=%s user=%s days=%s by=%s", subscription_id, user_id, days, granted_by)
    row = await subscription_store.get_by_id(db, row_id)
    if row is None:  # pragma: no cover - row was written above
        raise NotFoundError(f"subscription row {row_id} vanished after upsert")
    return row
