"""Billing error taxonomy.

Every failure the billing core raises is a ``BillingError`` carrying a
stable ``code``, an HTTP ``status_code`` for the API layer and a
``retryable`` flag. Webhook handling and Dramatiq tasks use ``retryable``
to decide whether a redelivery can possibly succeed.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(Exception):
    code: str = "BILLING_ERROR"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code, "retryable": self.retryable}
        if self.details:
            body["details"] = self.details
        return body


# -----------------------------------------------------------------------------
# Configuration


class ConfigurationError(BillingError):
    """Missing API key, webhook secret or SDK. Fatal, never retried."""

    code = "CONFIGURATION_ERROR"
    status_code = 500


# -----------------------------------------------------------------------------
# Inbound events


class SignatureVerificationFailed(BillingError):
    code = "INVALID_SIGNATURE"
    status_code = 400


class AttributionError(BillingError):
    """An event references a customer/session no local user can be linked to.

    Retrying cannot produce the missing linkage, so callers drop the event.
    """

    code = "UNATTRIBUTABLE_EVENT"
    status_code = 422


# -----------------------------------------------------------------------------
# Provider (Stripe) failures


class ProviderError(BillingError):
    code = "PROVIDER_ERROR"
    status_code = 502


class ProviderTimeoutError(ProviderError):
    code = "PROVIDER_TIMEOUT"
    status_code = 503
    retryable = True


class ProviderRateLimitError(ProviderError):
    code = "PROVIDER_RATE_LIMITED"
    status_code = 503
    retryable = True


class ProviderUnavailableError(ProviderError):
    code = "PROVIDER_UNAVAILABLE"
    status_code = 503
    retryable = True


class ProviderNotFoundError(ProviderError):
    code = "PROVIDER_NOT_FOUND"
    status_code = 404


class ProviderAuthError(ProviderError):
    code = "PROVIDER_AUTH_ERROR"
    status_code = 500


class ProviderRequestError(ProviderError):
    """Stripe rejected the request parameters (4xx other than 404/401/429)."""

    code = "PROVIDER_BAD_REQUEST"
    status_code = 400


# -----------------------------------------------------------------------------
# Validation


class PeriodValidationError(BillingError):
    code = "INVALID_PERIOD"
    status_code = 422


class UnknownStatusError(BillingError):
    code = "UNKNOWN_SUBSCRIPTION_STATUS"
    status_code = 422


class MalformedEventError(BillingError):
    """A provider object lacks a field every branch depends on (e.g. its id)."""

    code = "MALFORMED_EVENT"
    status_code = 422


# -----------------------------------------------------------------------------
# Authorization and lookups


class NotFoundError(BillingError):
    code = "NOT_FOUND"
    status_code = 404


class NotOwnerError(BillingError):
    code = "NOT_OWNER"
    status_code = 403


# -----------------------------------------------------------------------------
# State conflicts


class AlreadyHasSubscriptionError(BillingError):
    code = "ALREADY_HAS_SUBSCRIPTION"
    status_code = 409


class DuplicateCheckoutSessionError(BillingError):
    code = "DUPLICATE_CHECKOUT_SESSION"
    status_code = 409


__all__ = [
    "BillingError",
    "ConfigurationError",
    "SignatureVerificationFailed",
    "AttributionError",
    "ProviderError",
    "ProviderTimeoutError",
    "ProviderRateLimitError",
    "ProviderUnavailableError",
    "ProviderNotFoundError",
    "ProviderAuthError",
    "ProviderRequestError",
    "PeriodValidationError",
    "UnknownStatusError",
    "MalformedEventError",
    "NotFoundError",
    "NotOwnerError",
    "AlreadyHasSubscriptionError",
    "DuplicateCheckoutSessionError",
]
