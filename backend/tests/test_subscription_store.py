import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from lms_billing.core.database import Base, build_session_factory
from lms_billing.models.enums import SubscriptionStatus
from lms_billing.models.tables import Subscription
from lms_billing.services import subscription_store
from lms_billing.services.period_resolver import PeriodFallback

from fakes import DAY_MS, NOW, add_user


async def _upsert(db, user_id, *, sub_id="sub_1", status=SubscriptionStatus.ACTIVE, end=NOW + 30 * DAY_MS, clock=lambda: NOW, **kw):
    return await subscription_store.upsert_subscription(
        db,
        subscription_id=sub_id,
        user_id=user_id,
        customer_id=kw.pop("customer_id", "cus_1"),
        status=status,
        period_start=kw.pop("start", NOW),
        period_end=end,
        cancel_at_period_end=kw.pop("cancel_at_period_end", False),
        clock=clock,
        **kw,
    )


@pytest.mark.asyncio
async def test_upsert_is_idempotent_and_keeps_created_at(db):
    user = await add_user(db, "a@example.com")
    first = await _upsert(db, user.id)
    second = await _upsert(db, user.id, status=SubscriptionStatus.PAST_DUE, clock=lambda: NOW + 5000)
    assert first == second

    count = await db.scalar(select(func.count()).select_from(Subscription))
    assert count == 1
    row = await subscription_store.get_by_subscription_id(db, "sub_1")
    assert row.status == SubscriptionStatus.PAST_DUE
    assert row.created_at == NOW
    assert row.updated_at == NOW + 5000


@pytest.mark.asyncio
async def test_current_for_user_is_most_recent(db):
    user = await add_user(db, "a@example.com")
    await _upsert(db, user.id, sub_id="sub_old", clock=lambda: NOW - DAY_MS)
    await _upsert(db, user.id, sub_id="sub_new", clock=lambda: NOW)
    current = await subscription_store.get_current_for_user(db, user.id)
    assert current.subscription_id == "sub_new"
    history = await subscription_store.list_for_user(db, user.id)
    assert [r.subscription_id for r in history] == ["sub_new", "sub_old"]


@pytest.mark.asyncio
async def test_fallback_prefers_same_subscription(db):
    user = await add_user(db, "a@example.com")
    await _upsert(db, user.id, sub_id="sub_1", start=NOW - 10, end=NOW + 10, clock=lambda: NOW - DAY_MS)
    await _upsert(db, user.id, sub_id="sub_2", start=NOW - 20, end=NOW + 20, clock=lambda: NOW)
    assert await subscription_store.fallback_for(db, "sub_1", user.id) == PeriodFallback(NOW - 10, NOW + 10)
    assert await subscription_store.fallback_for(db, "sub_new", user.id) == PeriodFallback(NOW - 20, NOW + 20)
    assert await subscription_store.fallback_for(db, "sub_new", None) is None


@pytest.mark.asyncio
async def test_is_entitled_checks_status_and_period(db):
    user = await add_user(db, "a@example.com")
    await _upsert(db, user.id, end=NOW)
    row = await subscription_store.get_by_subscription_id(db, "sub_1")
    assert subscription_store.is_entitled(row, NOW)
    assert not subscription_store.is_entitled(row, NOW + 1)
    await subscription_store.patch_status(db, row.id, SubscriptionStatus.PAST_DUE)
    row = await subscription_store.get_by_id(db, row.id)
    assert not subscription_store.is_entitled(row, NOW)
    assert not subscription_store.is_entitled(None, NOW)


@pytest.mark.asyncio
async def test_customer_id_is_write_once(db):
    user = await add_user(db, "a@example.com")
    assert await subscription_store.set_user_customer_id(db, user, "cus_1") is True
    assert await subscription_store.set_user_customer_id(db, user, "cus_1") is False
    assert await subscription_store.set_user_customer_id(db, user, "cus_2") is False
    assert user.stripe_customer_id == "cus_1"
    assert await subscription_store.set_user_customer_id(db, user, "cus_2", overwrite=True) is True
    assert (await subscription_store.get_user_by_customer_id(db, "cus_2")).id == user.id


@pytest.mark.asyncio
async def test_deleted_user_is_not_returned(db):
    user = await add_user(db, "gone@example.com")
    user.deleted_at = NOW
    await db.commit()
    assert await subscription_store.get_user(db, user.id) is None


@pytest_asyncio.fixture
async def shared_engine(tmp_path):
    """File database so each session gets its own connection."""
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.mark.asyncio
async def test_concurrent_upserts_share_one_row(shared_engine):
    factory = build_session_factory(shared_engine)
    async with factory() as db:
        user_id = (await add_user(db, "a@example.com")).id

    statuses = [SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE] * 4

    async def write(i, status):
        async with factory() as db:
            return await _upsert(db, user_id, status=status, end=NOW + i, clock=lambda: NOW + i)

    ids = await asyncio.gather(*(write(i, s) for i, s in enumerate(statuses)))
    assert len(set(ids)) == 1

    async with factory() as db:
        count = await db.scalar(select(func.count()).select_from(Subscription))
        assert count == 1
        row = await subscription_store.get_by_subscription_id(db, "sub_1")
        assert row.subscription_id == "sub_1"
        assert row.customer_id == "cus_1"
        assert row.user_id == user_id
        assert NOW <= row.created_at <= NOW + 7
        # Fields come from a single writer, never a mix of two
        assert row.current_period_end == row.updated_at
