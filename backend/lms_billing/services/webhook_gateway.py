"""Stripe webhook dispatch.

The HTTP route verifies the signature and hands a decoded
:class:`ProviderEvent` to :class:`WebhookGateway`, which drives the
store through the branches below:

``checkout.session.completed``
    metadata ``userId`` is required; the customer id is linked to the user
    (write-once), the checkout session is marked complete and any
    referenced subscription is fetched from Stripe and reconciled.
``customer.subscription.created`` / ``updated``
    the user is found through the checkout session recorded for the
    customer, then the customer linked on the user, then the ``userId``
    in the subscription metadata; the subscription is reconciled.
``customer.subscription.deleted``
    as above, but the stored row is forced to ``canceled``.

Anything else is acknowledged and ignored. Events that cannot be
attributed to a user are logged and dropped: a redelivery would carry
the same data, so retrying cannot help.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lms_billing.core.errors import AttributionError
from lms_billing.core.observability import sentry_breadcrumb, sentry_metric_inc, sentry_set_tags
from lms_billing.models.enums import CheckoutSessionStatus
from lms_billing.services import checkout_sessions, subscription_store
from lms_billing.services.reconciliation import attribute_customer, is_admin_granted, reconcile_subscription
from lms_billing.services.stripe_client import StripeProvider
from lms_billing.services.stripe_events import (
    CHECKOUT_COMPLETED,
    HANDLED_EVENTS,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_EVENTS,
    CheckoutSnapshot,
    ProviderEvent,
    SubscriptionSnapshot,
    decode_checkout_session,
    decode_subscription,
)
from lms_billing.utils.helpers import now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventOutcome:
    event_type: str
    action: str  # "reconciled" | "checkout_completed" | "dropped" | "ignored"
    subscription_id: Optional[str] = None
    reason: Optional[str] = None

    def as_response(self) -> dict:
        body: dict = {"received": True, "type": self.event_type, "action": self.action}
        if self.subscription_id:
            body["subscription_id"] = self.subscription_id
        return body


def normalize_event_type(event_type: str) -> str:
    """Strip the ``v1.`` prefix thin event notifications carry."""
    return event_type[3:] if event_type.startswith("v1.") else event_type


class WebhookGateway:
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

    async def process_event(self, event: ProviderEvent) -> EventOutcome:
        """Handle a snapshot event whose ``data.object`` is complete."""
        event_type = normalize_event_type(event.type)
        self._observe(event_type, event)
        if event_type == CHECKOUT_COMPLETED:
            return await self.handle_checkout_completed(decode_checkout_session(event.object))
        if event_type in SUBSCRIPTION_EVENTS:
            return await self.handle_subscription_event(
                event_type,
                decode_subscription(event.object),
            )
        logger.info("[stripe] unhandled event type=%s id=%s", event_type, event.id)
        return EventOutcome(event_type, "ignored")

    async def process_thin_event(self, event: ProviderEvent) -> EventOutcome:
        """Handle a thin event: only a reference is delivered, so fetch the object first."""
        event_type = normalize_event_type(event.type)
        self._observe(event_type, event)
        if event_type not in HANDLED_EVENTS:
            logger.info("[stripe] unhandled thin event type=%s id=%s", event_type, event.id)
            return EventOutcome(event_type, "ignored")
        object_id = event.related_object_id or event.object.get("id")
        if not object_id:
            logger.error("[stripe] thin event without related object type=%s id=%s", event_type, event.id)
            return EventOutcome(event_type, "dropped", reason="missing related object")
        if event_type == CHECKOUT_COMPLETED:
            session = await self.provider.retrieve_checkout_session(str(object_id))
            return await self.handle_checkout_completed(session)
        snapshot = await self.provider.retrieve_subscription(str(object_id))
        return await self.handle_subscription_event(event_type, snapshot)

    # -- branches --------------------------------------------------------------

    async def handle_checkout_completed(self, session: CheckoutSnapshot) -> EventOutcome:
        logger.info(
            "[stripe] checkout.session.completed id=%s user=%s customer=%s subscription=%s",
            session.id, session.user_id, session.customer_id, session.subscription_id,
        )
        sentry_metric_inc("stripe.checkout.completed")
        if session.user_id is None:
            logger.error("[stripe] no userId in session metadata session=%s", session.id)
            return EventOutcome(CHECKOUT_COMPLETED, "dropped", reason="missing userId metadata")
        user = await subscription_store.get_user(self.db, session.user_id)
        if user is None:
            logger.error("[stripe] checkout session references unknown user=%s session=%s", session.user_id, session.id)
            return EventOutcome(CHECKOUT_COMPLETED, "dropped", reason="unknown user")

        if session.customer_id:
            await subscription_store.set_user_customer_id(self.db, user, session.customer_id)

        await self._complete_checkout_row(session)

        if not session.subscription_id:
            return EventOutcome(CHECKOUT_COMPLETED, "checkout_completed")
        snapshot = await self.provider.retrieve_subscription(session.subscription_id)
        row = await reconcile_subscription(self.db, snapshot, user_id=user.id, clock=self.clock)
        return EventOutcome(CHECKOUT_COMPLETED, "checkout_completed", subscription_id=row.subscription_id)

    async def handle_subscription_event(self, event_type: str, snapshot: SubscriptionSnapshot) -> EventOutcome:
        deleted = event_type == SUBSCRIPTION_DELETED
        if is_admin_granted(snapshot.id):
            logger.warning("[stripe] ignoring provider event for admin-granted subscription %s", snapshot.id)
            return EventOutcome(event_type, "ignored", subscription_id=snapshot.id)
        try:
            user_id = await attribute_customer(
                self.db, snapshot.customer_id, metadata_user_id=snapshot.metadata_user_id
            )
        except AttributionError as e:
            logger.error("[stripe] %s dropped sub=%s: %s", event_type, snapshot.id, e.message)
            sentry_metric_inc("stripe.webhook.unattributed", tags={"event_type": event_type})
            return EventOutcome(event_type, "dropped", subscription_id=snapshot.id, reason=e.message)
        row = await reconcile_subscription(self.db, snapshot, user_id=user_id, deleted=deleted, clock=self.clock)
        logger.info("[stripe] %s sub=%s user=%s status=%s", event_type, row.subscription_id, user_id, row.status.value)
        return EventOutcome(event_type, "reconciled", subscription_id=row.subscription_id)

    # -- helpers ---------------------------------------------------------------

    async def _complete_checkout_row(self, session: CheckoutSnapshot) -> None:
        row = await checkout_sessions.mark_outcome(
            self.db,
            session.id,
            CheckoutSessionStatus.COMPLETE,
            customer_id=session.customer_id,
            subscription_id=session.subscription_id,
            clock=self.clock,
        )
        if row is not None:
            return
        # Session started outside this panel (e.g. a Payment Link); record it so
        # later subscription events for the customer can be attributed.
        await checkout_sessions.create_checkout_session(self.db, session.id, session.user_id, clock=self.clock)  # type: ignore[arg-type]
        await checkout_sessions.mark_outcome(
            self.db,
            session.id,
            CheckoutSessionStatus.COMPLETE,
            customer_id=session.customer_id,
            subscription_id=session.subscription_id,
            clock=self.clock,
        )

    @staticmethod
    def _observe(event_type: str, event: ProviderEvent) -> None:
        sentry_set_tags({"stripe.event_type": event_type})
        sentry_metric_inc("stripe.webhook.received", tags={"event_type": event_type})
        object_id = event.related_object_id or event.object.get("id")
        if object_id:
            sentry_breadcrumb(
                category="stripe",
                message=f"webhook:{event_type}",
                level="info",
                data={"object": event.object.get("object") or event.related_object_type, "id": object_id},
            )
