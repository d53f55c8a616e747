"""Dramatiq worker entry point.

This module loads the environment and imports the billing tasks so they
are registered with the broker. Dramatiq imports it once in every worker
process, so it must not schedule anything itself; the daily cron runs in
its own process (see ``lms_billing.cron``).

Run with:
    python -m dramatiq lms_billing.worker
"""

import logging
from pathlib import Path

from dotenv import load_dotenv

# Load the repo root .env explicitly to avoid relying on CWD
repo_root = Path(__file__).resolve().parents[2]
root_env = repo_root / ".env"
if root_env.exists():
    load_dotenv(dotenv_path=str(root_env), override=False)

from lms_billing.core.observability import init_sentry  # noqa: E402
from lms_billing.core.tasks import broker, expire_ended_subscriptions, sync_all_subscriptions  # noqa: E402,F401

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

logger.info("Billing tasks registered: %s, %s", expire_ended_subscriptions.actor_name, sync_all_subscriptions.actor_name)
