"""Dramatiq task definitions for the daily billing jobs.

Two actors are defined:

``expire_ended_subscriptions``
    local expiry sweep (does not call Stripe).
``sync_all_subscriptions``
    re-reads every live provider-backed subscription from Stripe.

The billing services are async; each actor runs one service call in a
fresh event loop with its own engine, so no pooled connection outlives
the loop that opened it. To run a worker:

```bash
dramatiq lms_billing.worker --processes 1 --threads 2
```

The broker URL defaults to ``REDIS_URL``; override it via
``DRAMATIQ_BROKER_URL``. Under ``ENVIRONMENT=test`` a ``StubBroker`` is
used so importing this module never needs Redis.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Optional

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, TimeLimit, ShutdownNotifications, Retries
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lms_billing.core import database
from lms_billing.core.config import settings, is_test_environment
from lms_billing.core.observability import sentry_breadcrumb, sentry_metric_inc
from lms_billing.utils.helpers import now_ms

logger = logging.getLogger(__name__)


def _has_mw(broker, mw_cls) -> bool:
    return any(isinstance(m, mw_cls) for m in broker.middleware)


def build_broker() -> dramatiq.Broker:
    if is_test_environment():
        broker: dramatiq.Broker = StubBroker()
    else:
        redis_url = settings.DRAMATIQ_BROKER_URL or settings.REDIS_URL
        logger.info("Configuring Dramatiq with Redis URL: %s", redis_url)
        broker = RedisBroker(url=redis_url)
    if not _has_mw(broker, AgeLimit):
        broker.add_middleware(AgeLimit())
    if not _has_mw(broker, TimeLimit):
        broker.add_middleware(TimeLimit())
    if not _has_mw(broker, ShutdownNotifications):
        broker.add_middleware(ShutdownNotifications())
    if not _has_mw(broker, Retries):
        # Exponential backoff up to ~1m
        broker.add_middleware(Retries(max_retries=3, min_backoff=5000, max_backoff=60000))
    dramatiq.set_broker(broker)
    return broker


# Export the broker for the Dramatiq CLI
broker = build_broker()


@asynccontextmanager
async def task_session() -> AsyncIterator[AsyncSession]:
    """A session on a short-lived engine owned by the current event loop."""
    engine = database.build_engine(database.db_url)
    factory: async_sessionmaker[AsyncSession] = database.build_session_factory(engine)
    try:
        async with factory() as session:
            yield session
    finally:
        await engine.dispose()


async def run_expiry_sweep(
    session_factory: Optional[Callable[[], object]] = None,
    *,
    clock: Callable[[], int] = now_ms,
) -> int:
    from lms_billing.services.expiry_sweeper import expire_ended_subscriptions as sweep

    async with (session_factory or task_session)() as db:  # type: ignore[operator]
        return await sweep(db, clock=clock)


async def run_provider_sync(
    session_factory: Optional[Callable[[], object]] = None,
    *,
    clock: Callable[[], int] = now_ms,
) -> Dict[str, int]:
    from lms_billing.services.active_sync import ActiveSync
    from lms_billing.services.stripe_client import StripeProvider

    async with (session_factory or task_session)() as db:  # type: ignore[operator]
        return await ActiveSync(db, StripeProvider(), clock=clock).sync_all_from_provider()


@dramatiq.actor(max_retries=3, time_limit=10 * 60 * 1000)
def expire_ended_subscriptions() -> int:
    """Daily local expiry sweep."""
    count = asyncio.run(run_expiry_sweep())
    sentry_breadcrumb(category="billing", message="expiry_sweep", data={"expired": count})
    logger.info("[cron] expire_ended_subscriptions expired=%d", count)
    return count


@dramatiq.actor(max_retries=1, time_limit=30 * 60 * 1000)
def sync_all_subscriptions() -> Dict[str, int]:
    """Daily pull of provider state for every live subscription."""
    counts = asyncio.run(run_provider_sync())
    sentry_metric_inc("billing.sync_all.failed", value=counts.get("failed", 0))
    logger.info("[cron] sync_all_subscriptions %s", counts)
    return counts
