from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from lms_billing.api.error_handlers import register_error_handlers
from lms_billing.api.routes.admin_billing import router as admin_billing_router
from lms_billing.api.routes.billing import router as billing_router
from lms_billing.core import config as cfg
from lms_billing.core.database import get_db
from lms_billing.core.security import create_access_token
from lms_billing.models.enums import SubscriptionStatus
from lms_billing.services import subscription_store
from lms_billing.services.stripe_client import get_stripe_provider
from lms_billing.utils.helpers import days_to_ms, now_ms

from fakes import add_user, stripe_subscription


@pytest.fixture
def client(override_db, provider):
    app = FastAPI()
    register_error_handlers(app)
    app.include_router(billing_router)
    app.include_router(admin_billing_router)
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_stripe_provider] = lambda: provider
    return TestClient(app)


@pytest.fixture
def users(run_db, provider):
    """A paying learner, a second learner and an admin."""

    async def _seed(db):
        learner = await add_user(db, "learner@example.com", stripe_customer_id="cus_1")
        other = await add_user(db, "other@example.com")
        admin = await add_user(db, "admin@example.com", is_admin=True)
        now = now_ms()
        await subscription_store.upsert_subscription(
            db,
            subscription_id="sub_1",
            user_id=learner.id,
            customer_id="cus_1",
            status=SubscriptionStatus.ACTIVE,
            period_start=now,
            period_end=now + days_to_ms(30),
            cancel_at_period_end=False,
        )
        return {"learner": learner.id, "other": other.id, "admin": admin.id}

    ids = run_db(_seed)
    provider.subscriptions["sub_1"] = stripe_subscription("sub_1", "cus_1", start_s=now_ms() // 1000, end_s=now_ms() // 1000 + 30 * 86400)
    return ids


def _auth(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


def test_requires_bearer_token(client):
    assert client.get("/billing/subscription").status_code == 401
    resp = client.get("/billing/subscription", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


def test_my_subscription(client, users):
    resp = client.get("/billing/subscription", headers=_auth(users["learner"]))
    assert resp.status_code == 200
    body = resp.json()
    assert body["has_subscription"] is True
    assert body["subscription"]["subscription_id"] == "sub_1"

    resp = client.get("/billing/subscription", headers=_auth(users["other"]))
    assert resp.json() == {"has_subscription": False, "subscription": None}


def test_cancel_reactivate_and_ownership(client, users, provider):
    resp = client.post("/billing/cancel", json={"subscription_id": "sub_1"}, headers=_auth(users["learner"]))
    assert resp.status_code == 200
    assert resp.json()["subscription"]["cancel_at_period_end"] is True

    resp = client.post("/billing/reactivate", json={"subscription_id": "sub_1"}, headers=_auth(users["learner"]))
    assert resp.json()["subscription"]["cancel_at_period_end"] is False

    resp = client.post("/billing/cancel", json={"subscription_id": "sub_1"}, headers=_auth(users["other"]))
    assert resp.status_code == 403
    assert resp.json()["code"] == "NOT_OWNER"

    resp = client.post("/billing/cancel", json={"subscription_id": "sub_unknown"}, headers=_auth(users["other"]))
    assert resp.status_code == 404


def test_provider_outage_maps_to_503(client, users, provider):
    from lms_billing.core.errors import ProviderUnavailableError

    provider.fail_with = ProviderUnavailableError("stripe down")
    resp = client.post("/billing/sync/subscription", json={"subscription_id": "sub_1"}, headers=_auth(users["learner"]))
    assert resp.status_code == 503
    assert resp.headers["retry-after"] == "30"
    assert resp.json()["retryable"] is True


def test_checkout_conflict_when_entitled(client, users, monkeypatch):
    monkeypatch.setattr(cfg.settings, "STRIPE_PRICE_ID", "price_monthly", raising=False)
    resp = client.post("/billing/checkout", json={}, headers=_auth(users["learner"]))
    assert resp.status_code == 409
    assert resp.json()["code"] == "ALREADY_HAS_SUBSCRIPTION"

    resp = client.post("/billing/checkout", json={}, headers=_auth(users["other"]))
    assert resp.status_code == 200
    assert resp.json()["session_id"].startswith("cs_test_")


def test_portal(client, users):
    resp = client.post("/billing/portal", headers=_auth(users["learner"]))
    assert resp.status_code == 200
    assert resp.json()["url"].endswith("/cus_1")
    assert client.post("/billing/portal", headers=_auth(users["other"])).status_code == 404


def test_admin_routes_require_admin(client, users):
    resp = client.post("/admin/billing/grant", json={"user_id": users["other"]}, headers=_auth(users["learner"]))
    assert resp.status_code == 403


def test_admin_grant_and_badges(client, users):
    headers = _auth(users["admin"])
    resp = client.post("/admin/billing/grant", json={"user_id": users["other"], "duration_days": 30}, headers=headers)
    assert resp.status_code == 201
    assert resp.json()["is_admin_granted"] is True

    again = client.post("/admin/billing/grant", json={"user_id": users["other"]}, headers=headers)
    assert again.status_code == 409

    missing = client.post("/admin/billing/grant", json={"user_id": 99999}, headers=headers)
    assert missing.status_code == 404

    resp = client.post(
        "/admin/billing/statuses",
        json={"user_ids": [users["learner"], users["other"], users["admin"]]},
        headers=headers,
    )
    assert resp.status_code == 200
    statuses = resp.json()["statuses"]
    assert statuses[str(users["learner"])] == "active"
    assert statuses[str(users["other"])] == "active"
    assert statuses[str(users["admin"])] == "none"


def test_admin_billing_info_and_sync(client, users, provider):
    headers = _auth(users["admin"])
    info = client.get(f"/admin/billing/users/{users['learner']}", headers=headers)
    assert info.status_code == 200
    assert info.json()["is_entitled"] is True
    assert info.json()["payment"]["stripe_customer_id"] == "cus_1"

    provider.subscriptions["sub_1"]["status"] = "past_due"
    synced = client.post(f"/admin/billing/users/{users['learner']}/sync", headers=headers)
    assert synced.status_code == 200
    assert synced.json()["subscription"]["status"] == "past_due"

    assert client.get("/admin/billing/users/99999", headers=headers).status_code == 404


def test_billing_errors_share_one_body_shape(client, users):
    resp = client.post("/billing/cancel", json={"subscription_id": "sub_1"}, headers=_auth(users["other"]))
    assert resp.status_code == 403
    body = resp.json()
    assert body["code"] == "NOT_OWNER"
    assert body["retryable"] is False
    assert body["error"]
    assert "detail" not in body


def test_admin_billing_info_reports_total_paid_and_grant_audit(client, users, run_db, monkeypatch):
    from lms_billing.models.enums import CheckoutSessionStatus
    from lms_billing.services import checkout_sessions

    monkeypatch.setattr(cfg.settings, "STRIPE_PRICE_AMOUNT", 1999, raising=False)
    monkeypatch.setattr(cfg.settings, "STRIPE_PRICE_CURRENCY", "eur", raising=False)
    monkeypatch.setattr(cfg.settings, "STRIPE_PRICE_INTERVAL", "month", raising=False)

    async def _checkouts(db):
        for session_id in ("cs_a", "cs_b", "cs_c"):
            await checkout_sessions.create_checkout_session(db, session_id, users["learner"])
        await checkout_sessions.mark_outcome(db, "cs_a", CheckoutSessionStatus.COMPLETE, customer_id="cus_1")
        await checkout_sessions.mark_outcome(db, "cs_b", CheckoutSessionStatus.COMPLETE, customer_id="cus_1")
        await checkout_sessions.mark_outcome(db, "cs_c", CheckoutSessionStatus.EXPIRED)

    run_db(_checkouts)
    headers = _auth(users["admin"])
    payment = client.get(f"/admin/billing/users/{users['learner']}", headers=headers).json()["payment"]
    assert payment["completed_checkouts"] == 2
    assert payment["total_checkouts"] == 3
    assert payment["total_paid"] == pytest.approx(39.98)
    assert payment["currency"] == "EUR"
    assert payment["payment_interval"] == "month"

    client.post("/admin/billing/grant", json={"user_id": users["other"], "duration_days": 30}, headers=headers)
    info = client.get(f"/admin/billing/users/{users['other']}", headers=headers).json()
    assert info["payment"]["total_paid"] == 0
    [entry] = info["activity"]
    assert entry["action"] == "subscription_granted"
    assert entry["actor_user_id"] == users["admin"]
    assert entry["subscription_id"] == info["current_subscription"]["subscription_id"]
    assert entry["details"]["duration_days"] == 30


def test_admin_export_csv(client, users, run_db):
    async def _more_users(db):
        quoted = await add_user(db, "quoted@example.com")
        quoted.name = "Doe, Jane"
        gone = await add_user(db, "gone@example.com")
        gone.deleted_at = now_ms()
        await db.commit()

    run_db(_more_users)
    assert client.get("/admin/billing/export", headers=_auth(users["learner"])).status_code == 403

    resp = client.get("/admin/billing/export", headers=_auth(users["admin"]))
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert "attachment" in resp.headers["content-disposition"]
    lines = resp.text.strip().split("\n")
    assert lines[0] == "Name,Email,Subscription Status"
    assert "learner,learner@example.com,Active" in lines
    assert "other,other@example.com,Not Active" in lines
    assert '"Doe, Jane",quoted@example.com,Not Active' in lines
    assert not any("admin@example.com" in line or "gone@example.com" in line for line in lines)


def test_health_reports_database_init_error(monkeypatch):
    from lms_billing.api.main import create_app
    from lms_billing.core import database

    monkeypatch.setattr(database, "LAST_DB_INIT_ERROR", "connection refused")
    monkeypatch.setattr(database, "USING_SQLITE_FALLBACK", True)
    body = TestClient(create_app()).get("/health").json()
    assert body["sqlite_fallback"] is True
    assert body["db_init_error"] == "connection refused"
