"""ASGI entry point for the billing API.

``create_app`` assembles the routers, the billing error handlers and
CORS. The module-level ``app`` is what uvicorn serves::

    uvicorn lms_billing.api.main:app --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List
from urllib.parse import urlparse

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lms_billing.api.error_handlers import register_error_handlers
from lms_billing.api.routes.admin_billing import router as admin_billing_router
from lms_billing.api.routes.billing import router as billing_router
from lms_billing.api.routes.stripe_webhooks import router as stripe_webhooks_router
from lms_billing.core import database
from lms_billing.core.config import settings
from lms_billing.core.observability import init_sentry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if init_sentry("api"):
        logger.info("Sentry enabled for billing api")
    await database.init_db()
    if database.USING_SQLITE_FALLBACK:
        logger.warning("Billing api running on the SQLite fallback database")
    logger.info("Billing api ready (environment=%s)", settings.ENVIRONMENT)
    yield
    await database.engine.dispose()


def _cors_origins(is_dev: bool) -> List[str]:
    """Wildcard in development; otherwise the configured list plus the panel's origin."""
    if is_dev:
        return ["*"]
    origins = list(settings.BACKEND_CORS_ORIGINS or [])
    panel = urlparse(settings.PANEL_URL or "")
    if panel.scheme and panel.netloc:
        panel_origin = f"{panel.scheme}://{panel.netloc}"
        if panel_origin not in origins:
            origins.append(panel_origin)
    return origins


def create_app() -> FastAPI:
    is_dev = (settings.ENVIRONMENT or "development").lower() == "development"
    application = FastAPI(title="LMS Billing API", version="1.0.0", lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(is_dev),
        # Browsers reject credentials with a wildcard origin
        allow_credentials=not is_dev,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Stripe-Signature"],
    )
    register_error_handlers(application)

    for router in (stripe_webhooks_router, billing_router, admin_billing_router):
        application.include_router(router)

    @application.get("/health", tags=["health"])
    async def health():
        return {
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "sqlite_fallback": database.USING_SQLITE_FALLBACK,
            "db_init_error": database.LAST_DB_INIT_ERROR,
        }

    return application


app = create_app()
