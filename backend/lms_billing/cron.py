"""Billing cron process.

Enqueues the daily expiry sweep and provider sync onto the Dramatiq
broker. Run exactly one of these per deployment, next to any number of
worker processes:

    python -m lms_billing.cron

Nothing is scheduled on import; ``main`` builds and starts the scheduler.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.blocking import BlockingScheduler

from lms_billing.core.config import settings
from lms_billing.core.observability import init_sentry
from lms_billing.core.scheduler import register_billing_jobs
from lms_billing.core.tasks import expire_ended_subscriptions, sync_all_subscriptions

logger = logging.getLogger(__name__)


def build_billing_scheduler(scheduler_cls=BlockingScheduler):
    """A UTC scheduler with both billing jobs registered, not yet started."""
    scheduler = scheduler_cls(timezone="UTC")
    register_billing_jobs(
        scheduler,
        enqueue_expiry=expire_ended_subscriptions.send,
        enqueue_sync=sync_all_subscriptions.send,
    )
    return scheduler


def main() -> int:
    logging.basicConfig(level=logging.INFO)
    if not settings.BILLING_CRON_ENABLED:
        logger.warning("BILLING_CRON_ENABLED is off; billing cron not started")
        return 0
    if init_sentry("cron"):
        logger.info("Sentry SDK initialized for billing cron")
    scheduler = build_billing_scheduler()
    logger.info("Billing cron scheduler starting")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Billing cron scheduler stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
