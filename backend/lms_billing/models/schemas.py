"""Pydantic schemas for billing request and response models.

These are intentionally separate from the ORM models so the API can
expose derived fields (``is_admin_granted``, ``is_entitled``) that are
not stored.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import CheckoutSessionStatus, SubscriptionBadge, SubscriptionStatus


# ---------------------------------------------------------------------------
# Responses


class SubscriptionRead(BaseModel):
    subscription_id: str
    user_id: int
    customer_id: str
    status: SubscriptionStatus
    current_period_start: int
    current_period_end: int
    cancel_at_period_end: bool
    canceled_at: Optional[int] = None
    created_at: int
    updated_at: int
    is_admin_granted: bool = False

    model_config = ConfigDict(from_attributes=True)


class CheckoutSessionRead(BaseModel):
    session_id: str
    user_id: int
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: CheckoutSessionStatus
    created_at: int
    completed_at: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class SyncResult(BaseModel):
    """Outcome of a pull-based reconciliation."""

    success: bool
    subscription: Optional[SubscriptionRead] = None
    message: Optional[str] = None


class CheckoutStartResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class PortalResponse(BaseModel):
    url: str


class MySubscriptionResponse(BaseModel):
    has_subscription: bool
    subscription: Optional[SubscriptionRead] = None


class PaymentInfo(BaseModel):
    stripe_customer_id: Optional[str] = None
    completed_checkouts: int = 0
    total_checkouts: int = 0
    # Completed checkouts times the configured price, in major currency units
    total_paid: float = 0.0
    currency: str = "USD"
    payment_interval: Optional[str] = None


class ActivityRead(BaseModel):
    action: str
    actor_user_id: Optional[int] = None
    subscription_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: int

    model_config = ConfigDict(from_attributes=True)


class BillingInfo(BaseModel):
    """Admin view of one user's billing state and history."""

    user_id: int
    current_subscription: Optional[SubscriptionRead] = None
    is_entitled: bool = False
    subscription_history: List[SubscriptionRead] = Field(default_factory=list)
    checkout_history: List[CheckoutSessionRead] = Field(default_factory=list)
    payment: PaymentInfo = Field(default_factory=PaymentInfo)
    activity: List[ActivityRead] = Field(default_factory=list)


class StatusBadges(BaseModel):
    statuses: Dict[int, SubscriptionBadge]


# ---------------------------------------------------------------------------
# Requests


class AdminGrantRequest(BaseModel):
    user_id: int
    duration_days: int = Field(default=365, ge=1, le=3650)


class StatusBadgesRequest(BaseModel):
    user_ids: List[int] = Field(default_factory=list, max_length=500)
