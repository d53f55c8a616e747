"""SQLAlchemy ORM models for the billing service.

All instants are stored as integer milliseconds since the Unix epoch
(UTC) so that values coming from Stripe (seconds) and from the local
clock compare without timezone handling.

If you extend or modify these models remember to add an alembic
migration or call the ``init_db`` helper during development to
recreate the tables.
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
)
from sqlalchemy.orm import relationship

from lms_billing.core.database import Base
from lms_billing.utils.helpers import now_ms
from .enums import CheckoutSessionStatus, SubscriptionStatus


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    """Panel user. Only the fields the billing core reads or writes."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False, default="")
    is_admin = Column(Boolean, nullable=False, default=False)
    # Stripe customer reference (e.g., "cus_..."); write-once, see subscription_store
    stripe_customer_id = Column(String, unique=True, nullable=True)
    deleted_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, default=now_ms, nullable=False)
    updated_at = Column(BigInteger, default=now_ms, onupdate=now_ms, nullable=False)

    subscriptions = relationship("Subscription", back_populates="user")
    checkout_sessions = relationship("CheckoutSession", back_populates="user")
    activity = relationship("BillingActivity", back_populates="user", foreign_keys="BillingActivity.user_id")


class Subscription(Base):
    """One row per provider subscription id; users may have historical rows."""

    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(String, unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    customer_id = Column(String, nullable=False)
    status = Column(
        Enum(SubscriptionStatus, name="subscription_status", values_callable=_enum_values, native_enum=False),
        nullable=False,
    )
    current_period_start = Column(BigInteger, nullable=False)
    current_period_end = Column(BigInteger, nullable=False)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, default=now_ms, nullable=False)
    updated_at = Column(BigInteger, default=now_ms, nullable=False)

    user = relationship("User", back_populates="subscriptions")

    __table_args__ = (
        Index("ix_subscriptions_user_created", "user_id", "created_at"),
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
    )


class CheckoutSession(Base):
    """Intent-to-pay record linking a Stripe checkout session to a local user."""

    __tablename__ = "checkout_sessions"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    customer_id = Column(String, nullable=True, index=True)
    subscription_id = Column(String, nullable=True)
    status = Column(
        Enum(CheckoutSessionStatus, name="checkout_session_status", values_callable=_enum_values, native_enum=False),
        nullable=False,
        default=CheckoutSessionStatus.PENDING,
    )
    created_at = Column(BigInteger, default=now_ms, nullable=False)
    completed_at = Column(BigInteger, nullable=True)

    user = relationship("User", back_populates="checkout_sessions")

    __table_args__ = (Index("ix_checkout_sessions_user_created", "user_id", "created_at"),)


class BillingActivity(Base):
    """Audit trail of admin billing actions (grants) against a user."""

    __tablename__ = "billing_activity_log"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    actor_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(String, nullable=False)
    subscription_id = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(BigInteger, default=now_ms, nullable=False)

    user = relationship("User", back_populates="activity", foreign_keys=[user_id])

    __table_args__ = (Index("ix_billing_activity_user_created", "user_id", "created_at"),)
