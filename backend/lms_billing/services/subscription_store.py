"""Subscription store: the single write path for ``subscriptions``.

Every writer (webhooks, user syncs, the expiry sweep, admin grants) goes
through :func:`upsert_subscription` or :func:`patch_status`. The upsert is
one ``INSERT ... ON CONFLICT (subscription_id) DO UPDATE`` statement, so a
webhook racing a manual resync for the same subscription cannot produce a
duplicate row or drop the id fields of either write.

The customer pointer on ``users`` is also written here; it is set once and
only replaced when the caller passes ``overwrite=True``.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from lms_billing.models.enums import ENTITLED_STATUSES, SubscriptionStatus
from lms_billing.models.tables import Subscription, User
from lms_billing.services.period_resolver import PeriodFallback
from lms_billing.utils.helpers import now_ms

logger = logging.getLogger(__name__)


def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"upsert not supported for dialect {dialect}")


async def upsert_subscription(
    db: AsyncSession,
    *,
    subscription_id: str,
    user_id: int,
    customer_id: str,
    status: SubscriptionStatus,
    period_start: int,
    period_end: int,
    cancel_at_period_end: bool,
    canceled_at: Optional[int] = None,
    clock: Callable[[], int] = now_ms,
    commit: bool = True,
) -> int:
    """Create or update the row for ``subscription_id`` and return its id.

    On conflict the status, period, cancellation fields, ``user_id`` and
    ``customer_id`` are overwritten (Stripe is authoritative) and
    ``updated_at`` is bumped; ``created_at`` keeps its original value.
    """
    stamp = clock()
    values = dict(
        subscription_id=subscription_id,
        user_id=user_id,
        customer_id=customer_id,
        status=status,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=cancel_at_period_end,
        canceled_at=canceled_at,
        created_at=stamp,
        updated_at=stamp,
    )
    insert = _insert_for(db)
    stmt = insert(Subscription).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Subscription.subscription_id],
        set_={
            "user_id": stmt.excluded.user_id,
            "customer_id": stmt.excluded.customer_id,
            "status": stmt.excluded.status,
            "current_period_start": stmt.excluded.current_period_start,
            "current_period_end": stmt.excluded.current_period_end,
            "cancel_at_period_end": stmt.excluded.cancel_at_period_end,
            "canceled_at": stmt.excluded.canceled_at,
            "updated_at": stmt.excluded.updated_at,
        },
    ).returning(Subscription.id)
    row_id = (await db.execute(stmt)).scalar_one()
    if commit:
        await db.commit()
    logger.info(
        "[billing] upserted subscription id=%s sub=%s user=%s status=%s period=[%s,%s] cancel_at_period_end=%s",
        row_id, subscription_id, user_id, status.value, period_start, period_end, cancel_at_period_end,
    )
    return int(row_id)


async def patch_status(
    db: AsyncSession,
    row_id: int,
    status: SubscriptionStatus,
    *,
    clock: Callable[[], int] = now_ms,
    commit: bool = True,
) -> None:
    await db.execute(
        update(Subscription)
        .where(Subscription.id == row_id)
        .values(status=status, updated_at=clock())
    )
    if commit:
        await db.commit()


async def set_cancel_at_period_end(
    db: AsyncSession,
    row_id: int,
    cancel_at_period_end: bool,
    *,
    clock: Callable[[], int] = now_ms,
) -> None:
    """Flip the cancellation flag on a row that has no provider counterpart."""
    await db.execute(
        update(Subscription)
        .where(Subscription.id == row_id)
        .values(cancel_at_period_end=cancel_at_period_end, updated_at=clock())
    )
    await db.commit()


# -----------------------------------------------------------------------------
# Queries


async def get_by_subscription_id(db: AsyncSession, subscription_id: str) -> Optional[Subscription]:
    return await db.scalar(
        select(Subscription)
        .where(Subscription.subscription_id == subscription_id)
        .execution_options(populate_existing=True)
    )


async def get_by_id(db: AsyncSession, row_id: int) -> Optional[Subscription]:
    return await db.get(Subscription, row_id, populate_existing=True)


async def get_current_for_user(db: AsyncSession, user_id: int) -> Optional[Subscription]:
    """Most recently created row for the user, whatever its status."""
    return await db.scalar(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )


async def list_for_user(db: AsyncSession, user_id: int) -> List[Subscription]:
    result = await db.scalars(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .execution_options(populate_existing=True)
    )
    return list(result)


async def list_expirable(db: AsyncSession, now: int) -> List[Subscription]:
    result = await db.scalars(
        select(Subscription).where(
            Subscription.status.in_(list(ENTITLED_STATUSES)),
            Subscription.current_period_end < now,
        )
    )
    return list(result)


async def list_by_status(db: AsyncSession, statuses: List[SubscriptionStatus]) -> List[Subscription]:
    result = await db.scalars(select(Subscription).where(Subscription.status.in_(statuses)).order_by(Subscription.id))
    return list(result)


async def fallback_for(db: AsyncSession, subscription_id: str, user_id: Optional[int]) -> Optional[PeriodFallback]:
    """Stored period to fall back on: the same subscription, else the user's current row."""
    row = await get_by_subscription_id(db, subscription_id)
    if row is None and user_id is not None:
        row = await get_current_for_user(db, user_id)
    if row is None:
        return None
    return PeriodFallback(row.current_period_start, row.current_period_end)


def is_entitled(row: Optional[Subscription], now: int) -> bool:
    """Access check: status alone is not enough because the sweep may lag."""
    if row is None:
        return False
    return SubscriptionStatus(row.status) in ENTITLED_STATUSES and row.current_period_end >= now


# -----------------------------------------------------------------------------
# Users


async def get_user(db: AsyncSession, user_id: int) -> Optional[User]:
    user = await db.get(User, user_id)
    if user is None or user.deleted_at is not None:
        return None
    return user


async def get_user_by_customer_id(db: AsyncSession, customer_id: str) -> Optional[User]:
    return await db.scalar(select(User).where(User.stripe_customer_id == customer_id))


async def set_user_customer_id(
    db: AsyncSession,
    user: User,
    customer_id: str,
    *,
    overwrite: bool = False,
) -> bool:
    """Store the Stripe customer id on ``user``; returns True when it changed."""
    current = user.stripe_customer_id
    if current == customer_id:
        return False
    if current and not overwrite:
        logger.warning(
            "[billing] refusing to replace stripe_customer_id user=%s current=%s new=%s",
            user.id, current, customer_id,
        )
        return False
    user.stripe_customer_id = customer_id
    await db.commit()
    logger.info("[billing] linked user id=%s to stripe customer=%s", user.id, customer_id)
    return True
