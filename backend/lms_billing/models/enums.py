"""Enumeration types used throughout the billing service.

Enumerations constrain the values stored in the ``subscriptions`` and
``checkout_sessions`` tables. When modifying these enums update the
corresponding migration so that new values are accepted.
"""

from enum import Enum


class SubscriptionStatus(str, Enum):
    """Locally mirrored subscription states (a closed subset of Stripe's)."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    CANCELED = "canceled"


# Statuses that grant access, provided the period has not elapsed.
ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

# Stripe statuses outside the local set and what they are stored as.
PROVIDER_STATUS_ALIASES = {
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.PAST_DUE,
}


class CheckoutSessionStatus(str, Enum):
    """Lifecycle of a Stripe Checkout Session as tracked locally."""

    PENDING = "pending"
    COMPLETE = "complete"
    EXPIRED = "expired"


# Actions recorded in billing_activity_log.
GRANT_ACTION = "subscription_granted"


class SubscriptionBadge(str, Enum):
    """Coarse status shown next to users in admin listings."""

    ACTIVE = "active"
    NONE = "none"
