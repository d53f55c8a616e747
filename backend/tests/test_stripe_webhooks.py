from __future__ import annotations

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

# Import the real router to test wiring and handler behavior
import lms_billing.api.routes.stripe_webhooks as wh
import lms_billing.services.stripe_client as sc
from lms_billing.core.database import get_db
from lms_billing.models.enums import CheckoutSessionStatus, SubscriptionStatus
from lms_billing.services import checkout_sessions, subscription_store
from lms_billing.services.stripe_client import get_stripe_provider

from fakes import NOW_S, add_user, stripe_checkout_session, stripe_subscription


def _fake_event(event_type: str, data_object: dict, event_id: str = "evt_test_1"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": data_object},
    }


class DummyStripe:
    class error:
        class SignatureVerificationError(Exception):
            pass

    class Webhook:
        calls = []

        @staticmethod
        def construct_event(payload, sig_header, secret):
            DummyStripe.Webhook.calls.append((payload, sig_header, secret))
            # Accept any payload when secret matches "good"
            if secret != "good":
                raise DummyStripe.error.SignatureVerificationError("bad secret")
            return json.loads(payload.decode("utf-8"))


class DummyRedis:
    def __init__(self):
        self.store = set()
        self.deleted = []

    def set(self, name, value, nx=True, ex=None):
        if name in self.store:
            return False
        self.store.add(name)
        return True

    def delete(self, name):
        self.deleted.append(name)
        self.store.discard(name)


@pytest.fixture
def redis_stub():
    return DummyRedis()


@pytest.fixture(autouse=True)
def patch_stripe(monkeypatch, redis_stub):
    # Patch stripe module used for signature verification
    monkeypatch.setattr(sc, "stripe", DummyStripe)
    # Patch settings to provide webhook secrets
    from lms_billing.core import config as cfg
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRET", None, raising=False)
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRETS", "bad, good", raising=False)
    # Patch redis client used for dedup to a dummy
    monkeypatch.setattr(wh, "_get_redis_client", lambda: redis_stub)
    yield


@pytest.fixture
def app_client(override_db, provider):
    app = FastAPI()
    app.include_router(wh.router)
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_stripe_provider] = lambda: provider
    return TestClient(app)


def _post(client, event, path="/webhooks/stripe"):
    return client.post(path, content=json.dumps(event).encode("utf-8"), headers={"stripe-signature": "t=1,v1=x"})


@pytest.fixture
def learner(run_db):
    async def _seed(db):
        user = await add_user(db, "learner@example.com")
        await checkout_sessions.create_checkout_session(db, "cs_1", user.id)
        return user.id

    return run_db(_seed)


def test_invalid_signature_returns_400(app_client, monkeypatch):
    from lms_billing.core import config as cfg
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRETS", "bad", raising=False)
    resp = _post(app_client, _fake_event("checkout.session.completed", {"id": "cs_1"}))
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_SIGNATURE"


def test_missing_secret_returns_500(app_client, monkeypatch):
    from lms_billing.core import config as cfg
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRETS", None, raising=False)
    resp = _post(app_client, _fake_event("checkout.session.completed", {"id": "cs_1"}))
    assert resp.status_code == 500


def test_checkout_webhook_multi_secret_and_dedup(app_client, provider, learner, run_db):
    provider.subscriptions["sub_1"] = stripe_subscription("sub_1", "cus_1")
    event = _fake_event(
        "checkout.session.completed",
        stripe_checkout_session("cs_1", learner, customer="cus_1", subscription="sub_1"),
    )

    first = _post(app_client, event)
    assert first.status_code == 200
    assert first.json() == {
        "received": True,
        "type": "checkout.session.completed",
        "action": "checkout_completed",
        "subscription_id": "sub_1",
    }

    second = _post(app_client, event)
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert len(provider.called("retrieve_subscription")) == 1

    async def _check(db):
        session = await checkout_sessions.get_by_session_id(db, "cs_1")
        row = await subscription_store.get_by_subscription_id(db, "sub_1")
        return session.status, row.status, row.user_id

    assert run_db(_check) == (CheckoutSessionStatus.COMPLETE, SubscriptionStatus.ACTIVE, learner)


def test_unattributable_event_is_acknowledged(app_client):
    resp = _post(app_client, _fake_event("customer.subscription.updated", stripe_subscription("sub_x", "cus_nobody")))
    assert resp.status_code == 200
    assert resp.json()["action"] == "dropped"


def test_processing_failure_returns_400_and_releases_claim(app_client, learner, redis_stub, run_db):
    async def _link(db):
        user = await subscription_store.get_user(db, learner)
        await subscription_store.set_user_customer_id(db, user, "cus_1")

    run_db(_link)
    backwards = stripe_subscription("sub_1", "cus_1", start_s=NOW_S, end_s=NOW_S - 60)
    event = _fake_event("customer.subscription.updated", backwards, event_id="evt_bad")

    resp = _post(app_client, event)
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_PERIOD"
    assert redis_stub.deleted == ["stripe:webhook:evt_bad"]

    # The redelivery is processed again rather than reported as a duplicate
    resp = _post(app_client, event)
    assert resp.status_code == 400
    assert "duplicate" not in resp.json()


def test_thin_webhook_fetches_object(app_client, provider, learner, run_db):
    async def _link(db):
        user = await subscription_store.get_user(db, learner)
        await subscription_store.set_user_customer_id(db, user, "cus_1")

    run_db(_link)
    provider.subscriptions["sub_1"] = stripe_subscription("sub_1", "cus_1", status="past_due")
    event = {
        "id": "evt_thin_1",
        "type": "v1.customer.subscription.updated",
        "related_object": {"id": "sub_1", "type": "subscription"},
    }
    resp = _post(app_client, event, path="/webhooks/stripe-thin")
    assert resp.status_code == 200
    assert resp.json()["action"] == "reconciled"

    async def _status(db):
        return (await subscription_store.get_by_subscription_id(db, "sub_1")).status

    assert run_db(_status) == SubscriptionStatus.PAST_DUE
