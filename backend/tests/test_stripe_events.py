import pytest

from lms_billing.core.errors import MalformedEventError, UnknownStatusError
from lms_billing.models.enums import SubscriptionStatus
from lms_billing.services.stripe_events import (
    decode_checkout_session,
    decode_event,
    decode_subscription,
    map_status,
    parse_user_id,
)


class FakeStripeObject:
    """Mimics a StripeObject: not a Mapping, but exposes to_dict()."""

    def __init__(self, data):
        self._data = data

    def to_dict(self):
        return self._data


def test_decode_subscription_with_expanded_customer():
    snap = decode_subscription(
        FakeStripeObject(
            {
                "id": "sub_1",
                "customer": {"id": "cus_1", "object": "customer"},
                "status": "trialing",
                "current_period_start": 1_700_000_000,
                "current_period_end": 1_702_592_000,
                "cancel_at_period_end": True,
                "metadata": {"userId": "7"},
            }
        )
    )
    assert snap.id == "sub_1"
    assert snap.customer_id == "cus_1"
    assert snap.cancel_at_period_end is True
    assert snap.metadata_user_id == 7


def test_decode_subscription_thin_camel_case():
    snap = decode_subscription({"id": "sub_2", "customer": "cus_2", "status": "active", "cancelAtPeriodEnd": True, "canceledAt": 1_700_000_100})
    assert snap.cancel_at_period_end is True
    assert snap.canceled_at_s == 1_700_000_100.0
    assert snap.period_start_s is None


def test_decode_subscription_without_id_is_malformed():
    with pytest.raises(MalformedEventError):
        decode_subscription({"customer": "cus_1"})


def test_checkout_user_id_falls_back_to_client_reference_id():
    snap = decode_checkout_session({"id": "cs_1", "client_reference_id": "42", "customer": "cus_1", "subscription": "sub_1"})
    assert snap.user_id == 42
    assert snap.subscription_id == "sub_1"


def test_checkout_user_id_missing():
    snap = decode_checkout_session({"id": "cs_1", "metadata": {"userId": "not-a-number"}})
    assert snap.user_id is None


@pytest.mark.parametrize("value,expected", [("5", 5), (5, 5), ("0", None), ("-3", None), (None, None), (True, None)])
def test_parse_user_id(value, expected):
    assert parse_user_id(value) == expected


def test_map_status_aliases_and_unknown():
    assert map_status("past_due") is SubscriptionStatus.PAST_DUE
    assert map_status("incomplete_expired") is SubscriptionStatus.CANCELED
    assert map_status("paused") is SubscriptionStatus.PAST_DUE
    with pytest.raises(UnknownStatusError):
        map_status("levitating")
    with pytest.raises(UnknownStatusError):
        map_status(None)


def test_decode_thin_event_related_object():
    event = decode_event(
        {
            "id": "evt_thin_1",
            "type": "v1.customer.subscription.updated",
            "relatedObject": {"id": "sub_9", "type": "subscription"},
        }
    )
    assert event.related_object_id == "sub_9"
    assert event.related_object_type == "subscription"
    assert event.object == {}
