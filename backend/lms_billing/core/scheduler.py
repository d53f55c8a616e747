"""Cron registration for the daily billing jobs.

Registration is explicit: nothing is scheduled on import. The cron
process (``lms_billing.cron``) calls :func:`register_billing_jobs` once
against its scheduler; each job only enqueues a Dramatiq message so the
actual work is retried by the broker, not by APScheduler.
"""

from __future__ import annotations

import logging
from typing import Callable, List

from apscheduler.triggers.cron import CronTrigger

from lms_billing.core.config import settings

logger = logging.getLogger(__name__)

EXPIRY_SWEEP_JOB_ID = "billing.expire_ended_subscriptions"
PROVIDER_SYNC_JOB_ID = "billing.sync_all_subscriptions"


def _safe_enqueue(name: str, enqueue: Callable[[], object]) -> Callable[[], None]:
    def run() -> None:
        try:
            enqueue()
            logger.info("[cron] enqueued %s", name)
        except Exception as e:  # noqa: BLE001
            # A failed enqueue must not stop the scheduler thread.
            logger.error("[cron] failed to enqueue %s: %s", name, e)

    run.__name__ = f"enqueue_{name.rsplit('.', 1)[-1]}"
    return run


def register_billing_jobs(
    scheduler,
    *,
    enqueue_expiry: Callable[[], object],
    enqueue_sync: Callable[[], object],
    expiry_cron: str | None = None,
    sync_cron: str | None = None,
) -> List[str]:
    """Add the expiry sweep and provider sync jobs to ``scheduler``.

    Both crontabs are evaluated in UTC. Defaults come from
    ``EXPIRY_SWEEP_CRON`` (00:00) and ``PROVIDER_SYNC_CRON`` (01:00).
    Re-registering replaces the existing jobs. Returns the job ids.
    """
    jobs = (
        (EXPIRY_SWEEP_JOB_ID, expiry_cron or settings.EXPIRY_SWEEP_CRON, enqueue_expiry),
        (PROVIDER_SYNC_JOB_ID, sync_cron or settings.PROVIDER_SYNC_CRON, enqueue_sync),
    )
    ids: List[str] = []
    for job_id, crontab, enqueue in jobs:
        scheduler.add_job(
            _safe_enqueue(job_id, enqueue),
            CronTrigger.from_crontab(crontab, timezone="UTC"),
            id=job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info("Registered %s (%s UTC)", job_id, crontab)
        ids.append(job_id)
    return ids
