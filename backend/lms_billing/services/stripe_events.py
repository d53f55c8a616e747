"""Typed decoding of Stripe payloads.

Stripe SDK objects are loosely typed; a field may be absent, may be an id
string or an expanded object, and thin payloads use camelCase. Every
service below this layer works on the frozen dataclasses defined here,
with missing data spelled out as ``None``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from lms_billing.core.errors import MalformedEventError, UnknownStatusError
from lms_billing.models.enums import PROVIDER_STATUS_ALIASES, SubscriptionStatus
from lms_billing.services.period_resolver import coerce_number, read_raw_period

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

SUBSCRIPTION_EVENTS = frozenset({SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED})
HANDLED_EVENTS = SUBSCRIPTION_EVENTS | {CHECKOUT_COMPLETED}


def as_mapping(obj: Any) -> Mapping[str, Any]:
    """Return a plain mapping view of a Stripe object, dict or ``None``."""
    if obj is None:
        return {}
    if isinstance(obj, Mapping):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        converted = to_dict()
        if isinstance(converted, Mapping):
            return converted
    return {}


def _get(obj: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = obj.get(key)
        if value is not None:
            return value
    return None


def ref_id(value: Any) -> Optional[str]:
    """Id of a reference that may be a bare id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    found = as_mapping(value).get("id")
    return str(found) if found else None


def parse_user_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def map_status(raw: Optional[str]) -> SubscriptionStatus:
    """Map a Stripe subscription status onto the closed local set."""
    if not raw:
        raise UnknownStatusError("subscription status missing")
    try:
        return SubscriptionStatus(raw)
    except ValueError:
        pass
    mapped = PROVIDER_STATUS_ALIASES.get(raw)
    if mapped is None:
        raise UnknownStatusError(f"unsupported subscription status: {raw}", details={"status": raw})
    return mapped


@dataclass(frozen=True)
class SubscriptionSnapshot:
    id: str
    customer_id: Optional[str]
    status: Optional[str]
    period_start_s: Optional[float]
    period_end_s: Optional[float]
    cancel_at_period_end: bool
    canceled_at_s: Optional[float]
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def metadata_user_id(self) -> Optional[int]:
        return parse_user_id(_get(self.metadata, "userId", "user_id"))


@dataclass(frozen=True)
class CheckoutSnapshot:
    id: str
    user_id: Optional[int]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    status: Optional[str]
    mode: Optional[str] = None
    url: Optional[str] = None


@dataclass(frozen=True)
class ProviderEvent:
    id: Optional[str]
    type: str
    object: Mapping[str, Any]
    related_object_id: Optional[str] = None
    related_object_type: Optional[str] = None


def decode_subscription(obj: Any) -> SubscriptionSnapshot:
    raw = as_mapping(obj)
    sub_id = ref_id(raw.get("id"))
    if not sub_id:
        raise MalformedEventError("subscription object has no id")
    start, end = read_raw_period(raw)
    return SubscriptionSnapshot(
        id=sub_id,
        customer_id=ref_id(raw.get("customer")),
        status=_get(raw, "status"),
        period_start_s=start,
        period_end_s=end,
        cancel_at_period_end=bool(_get(raw, "cancel_at_period_end", "cancelAtPeriodEnd") or False),
        canceled_at_s=coerce_number(_get(raw, "canceled_at", "canceledAt")),
        metadata=as_mapping(raw.get("metadata")),
    )


def decode_checkout_session(obj: Any) -> CheckoutSnapshot:
    raw = as_mapping(obj)
    session_id = ref_id(raw.get("id"))
    if not session_id:
        raise MalformedEventError("checkout session has no id")
    metadata = as_mapping(raw.get("metadata"))
    user_id = parse_user_id(_get(metadata, "userId", "user_id"))
    if user_id is None:
        user_id = parse_user_id(_get(raw, "client_reference_id", "clientReferenceId"))
    return CheckoutSnapshot(
        id=session_id,
        user_id=user_id,
        customer_id=ref_id(raw.get("customer")),
        subscription_id=ref_id(raw.get("subscription")),
        status=_get(raw, "status"),
        mode=_get(raw, "mode"),
        url=_get(raw, "url"),
    )


def decode_event(obj: Any) -> ProviderEvent:
    raw = as_mapping(obj)
    data = as_mapping(raw.get("data"))
    related = as_mapping(_get(raw, "related_object", "relatedObject"))
    return ProviderEvent(
        id=ref_id(raw.get("id")),
        type=str(raw.get("type") or ""),
        object=as_mapping(data.get("object")),
        related_object_id=ref_id(related.get("id")),
        related_object_type=_get(related, "type", "object"),
    )
