"""Checkout session tracker.

A row is written the moment a user starts checkout, before Stripe has
confirmed anything. It is what lets a later subscription webhook, which
only carries a customer id, be attributed to a local user.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lms_billing.core.errors import DuplicateCheckoutSessionError
from lms_billing.models.enums import CheckoutSessionStatus
from lms_billing.models.tables import CheckoutSession
from lms_billing.utils.helpers import now_ms

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({CheckoutSessionStatus.COMPLETE, CheckoutSessionStatus.EXPIRED})


async def create_checkout_session(
    db: AsyncSession,
    session_id: str,
    user_id: int,
    *,
    clock: Callable[[], int] = now_ms,
) -> CheckoutSession:
    row = CheckoutSession(
        session_id=session_id,
        user_id=user_id,
        status=CheckoutSessionStatus.PENDING,
        created_at=clock(),
    )
    db.add(row)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise DuplicateCheckoutSessionError(f"checkout session {session_id} already recorded") from e
    await db.refresh(row)
    logger.info("[billing] checkout session stored session=%s user=%s", session_id, user_id)
    return row


async def get_by_session_id(db: AsyncSession, session_id: str) -> Optional[CheckoutSession]:
    return await db.scalar(
        select(CheckoutSession)
        .where(CheckoutSession.session_id == session_id)
        .execution_options(populate_existing=True)
    )


async def mark_outcome(
    db: AsyncSession,
    session_id: str,
    status: CheckoutSessionStatus,
    *,
    customer_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    clock: Callable[[], int] = now_ms,
) -> Optional[CheckoutSession]:
    """Move a pending session to a terminal status, exactly once.

    Re-applying the status the session already has is a no-op, and a
    session that already reached one terminal status never moves to the
    other. ``completed_at`` is only stamped on ``pending -> complete``.
    Returns ``None`` when the session was never recorded locally.
    """
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"not a terminal checkout status: {status}")
    row = await get_by_session_id(db, session_id)
    if row is None:
        logger.warning("[billing] checkout session not found session=%s", session_id)
        return None
    if row.status == status:
        return row
    if row.status in TERMINAL_STATUSES:
        logger.warning(
            "[billing] ignoring %s for checkout session=%s already %s",
            status.value, session_id, row.status.value,
        )
        return row
    row.status = status
    if customer_id:
        row.customer_id = customer_id
    if subscription_id:
        row.subscription_id = subscription_id
    if status == CheckoutSessionStatus.COMPLETE:
        row.completed_at = clock()
    await db.commit()
    logger.info("[billing] checkout session session=%s -> %s", session_id, status.value)
    return row


async def find_by_customer_id(db: AsyncSession, customer_id: str) -> Optional[CheckoutSession]:
    """First session recorded for the customer, or ``None``."""
    return await db.scalar(
        select(CheckoutSession)
        .where(CheckoutSession.customer_id == customer_id)
        .order_by(CheckoutSession.created_at.asc(), CheckoutSession.id.asc())
        .limit(1)
    )


async def list_for_user(db: AsyncSession, user_id: int) -> List[CheckoutSession]:
    result = await db.scalars(
        select(CheckoutSession)
        .where(CheckoutSession.user_id == user_id)
        .order_by(CheckoutSession.created_at.desc(), CheckoutSession.id.desc())
    )
    return list(result)
