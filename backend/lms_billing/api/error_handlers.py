"""
Exception handlers for the billing API.

Every billing failure is rendered with the same body,
``{"error": ..., "code": ..., "retryable": ...}``, and retryable provider
failures carry a ``Retry-After`` header.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from lms_billing.core.errors import BillingError
from lms_billing.core.observability import sentry_capture

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = "30"


def _retry_headers(exc: BillingError):
    return {"Retry-After": RETRY_AFTER_SECONDS} if exc.retryable else None


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"error": "Invalid request", "code": "VALIDATION_ERROR", "retryable": False, "details": jsonable_encoder(exc.errors())},
    )


def billing_exception_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error("[billing] %s %s failed code=%s: %s", request.method, request.url.path, exc.code, exc.message)
        sentry_capture(exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=_retry_headers(exc))


def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    sentry_capture(exc)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "code": "INTERNAL_ERROR", "retryable": True},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Billing errors raised anywhere below a route render through these."""
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(BillingError, billing_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
