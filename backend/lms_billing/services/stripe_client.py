"""Thin async wrapper around the Stripe SDK.

The SDK is synchronous, so each call runs in a worker thread and is bounded
by ``STRIPE_TIMEOUT_SECONDS``, both around the call and as the SDK's own
HTTP timeout. SDK exceptions are translated into the ``Provider*`` errors
from :mod:`lms_billing.core.errors`; nothing above this module sees a raw
``stripe`` exception.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from lms_billing.core.config import settings, get_webhook_secret_list
from lms_billing.core.errors import (
    BillingError,
    ConfigurationError,
    ProviderAuthError,
    ProviderError,
    ProviderNotFoundError,
    ProviderRateLimitError,
    ProviderRequestError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    SignatureVerificationFailed,
)
from lms_billing.core.observability import sentry_breadcrumb, sentry_metric_inc
from lms_billing.services.stripe_events import (
    CheckoutSnapshot,
    SubscriptionSnapshot,
    as_mapping,
    decode_checkout_session,
    decode_subscription,
)

logger = logging.getLogger(__name__)

try:  # Stripe is optional until billing is configured
    import stripe  # type: ignore
except Exception as e:  # pragma: no cover
    logger.exception("Failed to import Stripe SDK: %s", e)
    stripe = None  # type: ignore


def _stripe_exc(name: str):
    """Exception class from the SDK, or an empty tuple so ``isinstance`` is False."""
    return getattr(stripe, name, None) or ()


def translate_stripe_error(exc: Exception, *, operation: str) -> BillingError:
    if isinstance(exc, BillingError):
        return exc
    message = getattr(exc, "user_message", None) or str(exc) or type(exc).__name__
    http_status = getattr(exc, "http_status", None)
    details = {"operation": operation}
    if isinstance(exc, _stripe_exc("RateLimitError")) or http_status == 429:
        return ProviderRateLimitError(message, details=details)
    if isinstance(exc, _stripe_exc("AuthenticationError")) or isinstance(exc, _stripe_exc("PermissionError")) or http_status in (401, 403):
        return ProviderAuthError(message, details=details)
    if http_status == 404 or getattr(exc, "code", None) == "resource_missing":
        return ProviderNotFoundError(message, details=details)
    if isinstance(exc, _stripe_exc("APIConnectionError")):
        return ProviderUnavailableError(message, details=details)
    if isinstance(exc, _stripe_exc("InvalidRequestError")) or (http_status is not None and 400 <= http_status < 500):
        return ProviderRequestError(message, details=details)
    if http_status is not None and http_status >= 500:
        return ProviderUnavailableError(message, details=details)
    if isinstance(exc, _stripe_exc("StripeError")):
        return ProviderError(message, details=details)
    return ProviderUnavailableError(message, details=details)


def verify_webhook(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """Verify the Stripe-Signature header against every configured secret.

    Returns the event as a plain mapping; raises
    :class:`SignatureVerificationFailed` when no secret matches.
    """
    if stripe is None:
        raise ConfigurationError("Stripe SDK not available")
    secrets = get_webhook_secret_list()
    if not secrets:
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET not configured")
    if not sig_header:
        raise SignatureVerificationFailed("Missing stripe-signature header")
    last_error: Exception | None = None
    for secret in secrets:
        try:
            event = stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=secret)
            return dict(as_mapping(event))
        except Exception as e:  # SignatureVerificationError or a malformed payload
            last_error = e
            continue
    logger.warning("[stripe] invalid signature after trying %d secrets: %s", len(secrets), last_error)
    sentry_metric_inc("stripe.webhook.invalid_signature")
    raise SignatureVerificationFailed("Invalid signature")


class StripeProvider:
    """Async facade over the Stripe calls the billing core makes."""

    def __init__(self, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_API_KEY
        self.timeout = timeout if timeout is not None else settings.STRIPE_TIMEOUT_SECONDS

    def _require(self):
        if stripe is None:
            raise ConfigurationError("Stripe SDK not available")
        if not self.api_key:
            raise ConfigurationError("Stripe not configured")
        stripe.api_key = self.api_key
        stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
        # Per-attempt HTTP timeout; the SDK default is 80s
        if getattr(stripe.default_http_client, "_timeout", None) != self.timeout:
            stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)
        return stripe

    async def _call(self, operation: str, fn, *args, **kwargs) -> Any:
        try:
            result = await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning("[stripe] %s timed out after %ss", operation, self.timeout)
            sentry_metric_inc("stripe.api.timeout", tags={"operation": operation})
            raise ProviderTimeoutError(f"Stripe {operation} timed out", details={"operation": operation}) from e
        except Exception as e:
            translated = translate_stripe_error(e, operation=operation)
            logger.warning("[stripe] %s failed code=%s: %s", operation, translated.code, e)
            sentry_metric_inc("stripe.api.error", tags={"operation": operation, "code": translated.code})
            raise translated from e
        sentry_breadcrumb(category="stripe", message=operation, level="info")
        return result

    # -- subscriptions ---------------------------------------------------------

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        sdk = self._require()
        obj = await self._call("subscription.retrieve", sdk.Subscription.retrieve, subscription_id)
        return decode_subscription(obj)

    async def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> SubscriptionSnapshot:
        sdk = self._require()
        obj = await self._call(
            "subscription.modify",
            sdk.Subscription.modify,
            subscription_id,
            cancel_at_period_end=cancel,
        )
        return decode_subscription(obj)

    # -- checkout --------------------------------------------------------------

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSnapshot:
        sdk = self._require()
        obj = await self._call("checkout.session.retrieve", sdk.checkout.Session.retrieve, session_id)
        return decode_checkout_session(obj)

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        user_id: int,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSnapshot:
        sdk = self._require()
        obj = await self._call(
            "checkout.session.create",
            sdk.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=str(user_id),
            metadata={"userId": str(user_id)},
            subscription_data={"metadata": {"userId": str(user_id)}},
        )
        return decode_checkout_session(obj)

    # -- customers -------------------------------------------------------------

    async def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        sdk = self._require()
        obj = await self._call("customer.retrieve", sdk.Customer.retrieve, customer_id)
        return dict(as_mapping(obj))

    async def create_customer(self, *, email: str, name: Optional[str], user_id: int) -> str:
        sdk = self._require()
        obj = await self._call(
            "customer.create",
            sdk.Customer.create,
            email=email,
            name=name or None,
            metadata={"userId": str(user_id)},
        )
        customer_id = as_mapping(obj).get("id")
        if not customer_id:
            raise ProviderError("Stripe returned a customer without an id")
        return str(customer_id)

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        sdk = self._require()
        params: Dict[str, Any] = {"customer": customer_id, "return_url": return_url}
        if settings.STRIPE_PORTAL_CONFIGURATION_ID:
            params["configuration"] = settings.STRIPE_PORTAL_CONFIGURATION_ID
        obj = await self._call("billing_portal.session.create", sdk.billing_portal.Session.create, **params)
        url = as_mapping(obj).get("url")
        if not url:
            raise ProviderError("Stripe returned a portal session without a url")
        return str(url)


def get_stripe_provider() -> StripeProvider:
    """FastAPI dependency; overridden in tests."""
    return StripeProvider()
