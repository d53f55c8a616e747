"""Write provider subscription state into the local store.

``reconcile_subscription`` is the one primitive shared by the webhook
gateway and the pull-based sync actions: decode status and cancellation,
resolve the period against the stored row, then upsert.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lms_billing.core.errors import AttributionError, MalformedEventError, NotFoundError
from lms_billing.models.enums import SubscriptionStatus
from lms_billing.models.tables import Subscription
from lms_billing.services import checkout_sessions, subscription_store
from lms_billing.services.period_resolver import resolve_period
from lms_billing.services.stripe_events import SubscriptionSnapshot, map_status
from lms_billing.utils.helpers import MS_PER_SECOND, now_ms

logger = logging.getLogger(__name__)

ADMIN_GRANT_PREFIX = "admin-grant-"


def is_admin_granted(subscription_id: Optional[str]) -> bool:
    """True for locally synthesised subscriptions that Stripe knows nothing about."""
    return bool(subscription_id) and subscription_id.startswith(ADMIN_GRANT_PREFIX)  # type: ignore[union-attr]


@dataclass(frozen=True)
class Cancellation:
    status: SubscriptionStatus
    cancel_at_period_end: bool
    canceled_at: Optional[int]


def resolve_cancellation(
    snapshot: SubscriptionSnapshot,
    *,
    deleted: bool = False,
    clock: Callable[[], int] = now_ms,
) -> Cancellation:
    """Status and cancellation fields for ``snapshot``.

    A deletion is terminal whatever the payload says: the status becomes
    canceled, ``cancel_at_period_end`` is cleared and ``canceled_at``
    defaults to now.
    """
    canceled_at = None
    if snapshot.canceled_at_s is not None and snapshot.canceled_at_s > 0:
        canceled_at = int(round(snapshot.canceled_at_s * MS_PER_SECOND))
    if deleted:
        if snapshot.status and snapshot.status != SubscriptionStatus.CANCELED.value:
            logger.info("[stripe] deletion of sub=%s reported status=%s; storing canceled", snapshot.id, snapshot.status)
        return Cancellation(SubscriptionStatus.CANCELED, False, canceled_at or clock())
    return Cancellation(map_status(snapshot.status), snapshot.cancel_at_period_end, canceled_at)


async def attribute_customer(
    db: AsyncSession,
    customer_id: Optional[str],
    *,
    metadata_user_id: Optional[int] = None,
) -> int:
    """Resolve the local user owning a Stripe customer.

    The checkout session recorded for the customer wins; a user already
    linked through ``stripe_customer_id`` is the second choice. Last comes
    the ``userId`` that checkout stamps on the subscription metadata, which
    also links the customer to that user. Raises :class:`AttributionError`
    when none of them resolves to a live user.
    """
    if not customer_id:
        raise AttributionError("event carries no customer id")
    session = await checkout_sessions.find_by_customer_id(db, customer_id)
    if session is not None:
        return int(session.user_id)
    user = await subscription_store.get_user_by_customer_id(db, customer_id)
    if user is not None:
        return int(user.id)
    if metadata_user_id is not None:
        user = await subscription_store.get_user(db, metadata_user_id)
        if user is not None:
            logger.info("[stripe] attributed customer=%s to user=%s via subscription metadata", customer_id, user.id)
            await subscription_store.set_user_customer_id(db, user, customer_id)
            return int(user.id)
    raise AttributionError(f"No checkout session found for customer {customer_id}", details={"customer_id": customer_id})


async def reconcile_subscription(
    db: AsyncSession,
    snapshot: SubscriptionSnapshot,
    *,
    user_id: int,
    deleted: bool = False,
    clock: Callable[[], int] = now_ms,
) -> Subscription:
    existing = await subscription_store.get_by_subscription_id(db, snapshot.id)
    customer_id = snapshot.customer_id or (existing.customer_id if existing is not None else None)
    if not customer_id:
        raise MalformedEventError(f"subscription {snapshot.id} has no customer")

    cancellation = resolve_cancellation(snapshot, deleted=deleted, clock=clock)
    fallback = await subscription_store.fallback_for(db, snapshot.id, user_id)
    period = resolve_period(
        snapshot.period_start_s,
        snapshot.period_end_s,
        fallback,
        clock=clock,
        subscription_id=snapshot.id,
    )
    row_id = await subscription_store.upsert_subscription(
        db,
        subscription_id=snapshot.id,
        user_id=user_id,
        customer_id=customer_id,
        status=cancellation.status,
        period_start=period.start_ms,
        period_end=period.end_ms,
        cancel_at_period_end=cancellation.cancel_at_period_end,
        canceled_at=cancellation.canceled_at,
        clock=clock,
    )
    row = await subscription_store.get_by_id(db, row_id)
    if row is None:  # pragma: no cover - row was written above
        raise NotFoundError(f"subscription row {row_id} vanished after upsert")
    return row
