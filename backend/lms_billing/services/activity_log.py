"""Billing audit trail.

Admin actions that change a user's entitlement without Stripe (grants)
leave a row in ``billing_activity_log``. Rows are only ever appended.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lms_billing.models.tables import BillingActivity
from lms_billing.utils.helpers import now_ms


async def record_activity(
    db: AsyncSession,
    *,
    user_id: int,
    action: str,
    actor_user_id: Optional[int] = None,
    subscription_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    clock: Callable[[], int] = now_ms,
    commit: bool = True,
) -> BillingActivity:
    entry = BillingActivity(
        user_id=user_id,
        actor_user_id=actor_user_id,
        action=action,
        subscription_id=subscription_id,
        details=details,
        created_at=clock(),
    )
    db.add(entry)
    if commit:
        await db.commit()
    return entry


async def list_for_user(db: AsyncSession, user_id: int) -> List[BillingActivity]:
    result = await db.scalars(
        select(BillingActivity)
        .where(BillingActivity.user_id == user_id)
        .order_by(BillingActivity.created_at.desc(), BillingActivity.id.desc())
    )
    return list(result)
