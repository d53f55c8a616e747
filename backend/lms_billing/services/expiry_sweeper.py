"""Daily expiry sweep.

Flips ``active``/``trialing`` rows whose period has ended to ``canceled``.
Stripe is not consulted: a subscription that was quietly renewed is
corrected by the next webhook, the nightly provider sync or a manual
resync.
"""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from lms_billing.core.observability import sentry_metric_inc
from lms_billing.models.enums import SubscriptionStatus
from lms_billing.services import subscription_store
from lms_billing.utils.helpers import ms_to_iso, now_ms

logger = logging.getLogger(__name__)


async def expire_ended_subscriptions(db: AsyncSession, *, clock: Callable[[], int] = now_ms) -> int:
    """Cancel every entitled row with ``current_period_end < now``; returns the count."""
    now = clock()
    rows = await subscription_store.list_expirable(db, now)
    row_ids = [row.id for row in rows]
    for row_id in row_ids:
        await subscription_store.patch_status(db, row_id, SubscriptionStatus.CANCELED, clock=clock, commit=False)
    await db.commit()
    if row_ids:
        logger.info("[billing] expired %d subscriptions (now=%s)", len(row_ids), ms_to_iso(now))
        sentry_metric_inc("billing.subscriptions.expired", value=len(row_ids))
    return len(row_ids)
