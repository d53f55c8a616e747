from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from lms_billing.core.config import settings
from lms_billing.core.database import get_db
from lms_billing.core.errors import BillingError, ConfigurationError, SignatureVerificationFailed
from lms_billing.core.observability import sentry_capture, sentry_metric_inc
from lms_billing.services.stripe_client import StripeProvider, get_stripe_provider, verify_webhook
from lms_billing.services.stripe_events import decode_event
from lms_billing.services.webhook_gateway import WebhookGateway
import logging
from functools import lru_cache
from typing import Optional

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@lru_cache(maxsize=1)
def _get_redis_client():
    """Return a cached Redis client for webhook de-duplication.

    Only SET NX EX and DEL are used; failures are non-fatal.
    """
    try:
        import redis  # type: ignore
        return redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    except Exception as e:  # pragma: no cover - webhook continues without dedup
        logger.warning("[stripe] redis unavailable for dedup: %s", e)
        return None


def _dedup_key(event_id: str) -> str:
    return f"stripe:webhook:{event_id}"


def _claim_event(event_id: Optional[str]) -> bool:
    """Mark ``event_id`` as being processed; False when it was already seen."""
    if not event_id:
        return True
    try:
        r = _get_redis_client()
        if r is None:
            return True
        return bool(r.set(name=_dedup_key(event_id), value="1", nx=True, ex=settings.STRIPE_WEBHOOK_DEDUP_TTL))
    except Exception as e:  # pragma: no cover - do not fail webhook on redis errors
        logger.warning("[stripe] redis dedup check failed: %s", e)
        return True


def _release_event(event_id: Optional[str]) -> None:
    """Forget a claimed event so Stripe's redelivery is processed."""
    if not event_id:
        return
    try:
        r = _get_redis_client()
        if r is not None:
            r.delete(_dedup_key(event_id))
    except Exception as e:  # pragma: no cover
        logger.warning("[stripe] redis dedup release failed id=%s: %s", event_id, e)


def _error_response(exc: BillingError) -> JSONResponse:
    # Any non-2xx makes Stripe redeliver; configuration problems are reported as 500.
    status_code = 500 if isinstance(exc, ConfigurationError) else 400
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def _receive(request: Request, db: AsyncSession, provider: StripeProvider, *, thin: bool) -> JSONResponse:
    payload = await request.body()
    try:
        raw = verify_webhook(payload, request.headers.get("stripe-signature"))
    except SignatureVerificationFailed as e:
        return _error_response(e)
    except ConfigurationError as e:
        logger.error("[stripe] webhook not configured: %s", e.message)
        return _error_response(e)

    event = decode_event(raw)
    if not _claim_event(event.id):
        logger.info("[stripe] duplicate webhook event ignored id=%s", event.id)
        sentry_metric_inc("stripe.webhook.duplicate")
        return JSONResponse(status_code=200, content={"received": True, "duplicate": True, "id": event.id})

    gateway = WebhookGateway(db, provider)
    try:
        if thin:
            outcome = await gateway.process_thin_event(event)
        else:
            outcome = await gateway.process_event(event)
    except BillingError as e:
        _release_event(event.id)
        await db.rollback()
        logger.warning("[stripe] webhook processing failed type=%s id=%s code=%s: %s", event.type, event.id, e.code, e.message)
        sentry_metric_inc("stripe.webhook.error", tags={"event_type": event.type, "code": e.code})
        return _error_response(e)
    except Exception as e:
        _release_event(event.id)
        await db.rollback()
        logger.exception("[stripe] webhook processing crashed type=%s id=%s", event.type, event.id)
        sentry_capture(e)
        return JSONResponse(status_code=400, content={"error": str(e) or "Webhook processing failed"})
    return JSONResponse(status_code=200, content=outcome.as_response())


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    provider: StripeProvider = Depends(get_stripe_provider),
):
    """Handle Stripe snapshot webhooks (full objects in ``data.object``).

    Responds 200 with ``{"received": true}`` when the event was handled,
    ignored or deliberately dropped; 400 on a bad signature or a
    processing failure so Stripe redelivers.
    """
    return await _receive(request, db, provider, thin=False)


@router.post("/webhooks/stripe-thin")
async def stripe_thin_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    provider: StripeProvider = Depends(get_stripe_provider),
):
    """Handle thin webhooks: the object is fetched from Stripe before dispatch."""
    return await _receive(request, db, provider, thin=True)
