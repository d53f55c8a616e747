"""Pull-based reconciliation triggered by users and admins.

Webhooks can arrive late or not at all. The actions here read Stripe
directly and write the result through the same reconcile primitive the
webhook gateway uses, so the caller gets an authoritative answer
synchronously. Provider failures propagate as ``Provider*`` errors and
never leave a partial local write behind.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lms_billing.core.config import settings
from lms_billing.core.errors import (
    AlreadyHasSubscriptionError,
    BillingError,
    ConfigurationError,
    NotFoundError,
    NotOwnerError,
    ProviderNotFoundError,
)
from lms_billing.core.observability import sentry_metric_inc
from lms_billing.models.enums import CheckoutSessionStatus, SubscriptionStatus
from lms_billing.models.schemas import CheckoutStartResponse, SyncResult
from lms_billing.models.tables import Subscription, User
from lms_billing.services import checkout_sessions, subscription_store
from lms_billing.services.billing_views import subscription_read
from lms_billing.services.reconciliation import is_admin_granted, reconcile_subscription
from lms_billing.services.stripe_client import StripeProvider
from lms_billing.utils.helpers import now_ms

logger = logging.getLogger(__name__)

# Rows worth re-reading from Stripe in the nightly pass.
SYNCABLE_STATUSES = [
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.UNPAID,
    SubscriptionStatus.INCOMPLETE,
]


def _payments_url(query: str = "") -> str:
    base = settings.PANEL_URL.rstrip("/")
    return f"{base}/payments{query}"


def _ensure_owner(row: Subscription, user: User) -> None:
    if row.user_id != user.id and not user.is_admin:
        raise NotOwnerError("Subscription does not belong to the current user")


def _synced(row: Subscription) -> SyncResult:
    return SyncResult(success=True, subscription=subscription_read(row))


class ActiveSync:
    def __init__(
        self,
        db: AsyncSession,
        provider: StripeProvider,
        *,
        clock: Callable[[], int] = now_ms,
    ):
        self.db = db
        self.provider = provider
        self.clock = clock

    # -- checkout ------------------------------------------------------------

    async def start_checkout(self, user: User, price_id: Optional[str] = None) -> CheckoutStartResponse:
        """Create a subscription-mode Checkout Session and record it as pending."""
        price = price_id or settings.STRIPE_PRICE_ID
        if not price:
            raise ConfigurationError("STRIPE_PRICE_ID not configured")
        current = await subscription_store.get_current_for_user(self.db, user.id)
        if subscription_store.is_entitled(current, self.clock()):
            raise AlreadyHasSubscriptionError("User already has an active subscription.")

        customer_id = await self.ensure_customer(user)
        session = await self.provider.create_checkout_session(
            customer_id=customer_id,
            price_id=price,
            user_id=user.id,
            success_url=_payments_url("?success=true&session_id={CHECKOUT_SESSION_ID}"),
            cancel_url=_payments_url("?canceled=true"),
        )
        await checkout_sessions.create_checkout_session(self.db, session.id, user.id, clock=self.clock)
        sentry_metric_inc("billing.checkout.created")
        return CheckoutStartResponse(session_id=session.id, url=session.url)

    async def ensure_customer(self, user: User) -> str:
        """Return the user's Stripe customer id, creating the customer on first use.

        A stored id whose customer was deleted in Stripe is replaced; that is
        the only path allowed to overwrite the pointer.
        """
        if user.stripe_customer_id:
            try:
                customer = await self.provider.retrieve_customer(user.stripe_customer_id)
            except ProviderNotFoundError:
                customer = {"deleted": True}
            if not customer.get("deleted"):
                return user.stripe_customer_id
            logger.warning("[stripe] stored customer %s is gone; creating a new one user=%s", user.stripe_customer_id, user.id)
        customer_id = await self.provider.create_customer(email=user.email, name=user.name, user_id=user.id)
        await subscription_store.set_user_customer_id(self.db, user, customer_id, overwrite=True)
        return customer_id

    async def create_portal_session(self, user: User) -> str:
        if not user.stripe_customer_id:
            raise NotFoundError("No billing account for this user")
        return await self.provider.create_portal_session(
            customer_id=user.stripe_customer_id,
            return_url=_payments_url(),
        )

    async def sync_by_checkout_session(self, user: User, session_id: str) -> SyncResult:
        """Post-checkout sync: the redirect back from Stripe carries the session id."""
        local = await checkout_sessions.get_by_session_id(self.db, session_id)
        try:
            remote = await self.provider.retrieve_checkout_session(session_id)
        except ProviderNotFoundError as e:
            raise NotFoundError("Checkout session not found") from e

        owner_id = remote.user_id if remote.user_id is not None else (local.user_id if local is not None else None)
        if owner_id is None:
            raise NotFoundError("Checkout session not found")
        if owner_id != user.id:
            raise NotOwnerError("Checkout session does not belong to the current user")

        if remote.status == CheckoutSessionStatus.EXPIRED.value:
            await checkout_sessions.mark_outcome(self.db, session_id, CheckoutSessionStatus.EXPIRED, clock=self.clock)
            return SyncResult(success=False, message="Checkout session expired")
        if remote.status != CheckoutSessionStatus.COMPLETE.value:
            return SyncResult(success=False, message="Checkout not completed yet")

        if remote.customer_id:
            await subscription_store.set_user_customer_id(self.db, user, remote.customer_id)
        if local is None:
            await checkout_sessions.create_checkout_session(self.db, session_id, user.id, clock=self.clock)
        await checkout_sessions.mark_outcome(
            self.db,
            session_id,
            CheckoutSessionStatus.COMPLETE,
            customer_id=remote.customer_id,
            subscription_id=remote.subscription_id,
            clock=self.clock,
        )
        if not remote.subscription_id:
            return SyncResult(success=False, message="Checkout completed without a subscription")
        snapshot = await self.provider.retrieve_subscription(remote.subscription_id)
        row = await reconcile_subscription(self.db, snapshot, user_id=user.id, clock=self.clock)
        return _synced(row)

    # -- subscriptions -------------------------------------------------------

    async def resync_subscription(self, user: User, subscription_id: str) -> SyncResult:
        """Manual resync; repairs rows written in degraded mode or after a lost webhook."""
        row = await subscription_store.get_by_subscription_id(self.db, subscription_id)
        if row is not None:
            _ensure_owner(row, user)
            if is_admin_granted(subscription_id):
                return _synced(row)
            owner_id = row.user_id
        elif is_admin_granted(subscription_id):
            raise NotFoundError("Subscription not found")
        else:
            owner_id = user.id
        try:
            snapshot = await self.provider.retrieve_subscription(subscription_id)
        except ProviderNotFoundError as e:
            raise NotFoundError("Subscription not found") from e
        if row is None and (not user.stripe_customer_id or snapshot.customer_id != user.stripe_customer_id):
            raise NotOwnerError("Subscription does not belong to the current user")
        row = await reconcile_subscription(self.db, snapshot, user_id=owner_id, clock=self.clock)
        return _synced(row)

    async def cancel_subscription(self, user: User, subscription_id: str) -> SyncResult:
        return await self._set_cancel_at_period_end(user, subscription_id, True)

    async def reactivate_subscription(self, user: User, subscription_id: str) -> SyncResult:
        return await self._set_cancel_at_period_end(user, subscription_id, False)

    async def _set_cancel_at_period_end(self, user: User, subscription_id: str, cancel: bool) -> SyncResult:
        row = await subscription_store.get_by_subscription_id(self.db, subscription_id)
        if row is None:
            raise NotFoundError("Subscription not found")
        _ensure_owner(row, user)
        if is_admin_granted(subscription_id):
            await subscription_store.set_cancel_at_period_end(self.db, row.id, cancel, clock=self.clock)
            refreshed = await subscription_store.get_by_id(self.db, row.id)
            return _synced(refreshed)  # type: ignore[arg-type]
        # Stripe first; a failure here leaves the local row untouched.
        snapshot = await self.provider.set_cancel_at_period_end(subscription_id, cancel)
        row = await reconcile_subscription(self.db, snapshot, user_id=row.user_id, clock=self.clock)
        logger.info("[stripe] cancel_at_period_end=%s sub=%s by user=%s", cancel, subscription_id, user.id)
        return _synced(row)

    # -- admin / batch -------------------------------------------------------

    async def admin_sync_user(self, user_id: int) -> SyncResult:
        user = await subscription_store.get_user(self.db, user_id)
        if user is None:
            raise NotFoundError("User not found.")
        row = await subscription_store.get_current_for_user(self.db, user_id)
        if row is None:
            return SyncResult(success=False, message="User has no subscription")
        if is_admin_granted(row.subscription_id):
            return _synced(row)
        snapshot = await self.provider.retrieve_subscription(row.subscription_id)
        row = await reconcile_subscription(self.db, snapshot, user_id=user_id, clock=self.clock)
        return _synced(row)

    async def sync_all_from_provider(self) -> Dict[str, int]:
        """Re-read every live provider-backed row from Stripe.

        Failures are counted and logged per row so one bad subscription
        does not stop the batch.
        """
        counts = {"synced": 0, "failed": 0, "skipped": 0}
        rows = await subscription_store.list_by_status(self.db, SYNCABLE_STATUSES)
        # Plain tuples: a rollback below expires the ORM instances.
        targets = [(row.subscription_id, row.user_id) for row in rows]
        for subscription_id, owner_id in targets:
            if is_admin_granted(subscription_id):
                counts["skipped"] += 1
                continue
            try:
                snapshot = await self.provider.retrieve_subscription(subscription_id)
                await reconcile_subscription(self.db, snapshot, user_id=owner_id, clock=self.clock)
                counts["synced"] += 1
            except BillingError as e:
                await self.db.rollback()
                counts["failed"] += 1
                logger.warning("[stripe] nightly sync failed sub=%s code=%s: %s", subscription_id, e.code, e.message)
        logger.info("[stripe] nightly sync finished %s", counts)
        sentry_metric_inc("billing.sync_all.synced", value=counts["synced"])
        return counts
