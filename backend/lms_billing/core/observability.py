"""Sentry wiring shared by the API process and the Dramatiq worker.

Billing events carry customer ids, emails and Stripe signatures, so every
event passes through :func:`_scrub` before it leaves the process. All
helpers below swallow their own failures and do nothing when no DSN is
configured; observability must never change the outcome of a webhook.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from lms_billing.core.config import settings

try:  # sentry-sdk is installed everywhere, but a DSN is optional
	import sentry_sdk  # type: ignore
	from sentry_sdk.integrations.fastapi import FastApiIntegration  # type: ignore
	from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration  # type: ignore
	_HAS_SDK = True
except Exception:  # pragma: no cover
	sentry_sdk = None  # type: ignore
	_HAS_SDK = False

_SCRUBBED_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "stripe-signature"})
_TAG_LIMIT = 128
_METRIC_TAG_LIMIT = 64


def _active() -> bool:
	return _HAS_SDK and bool(settings.SENTRY_DSN)


def _scrub(event: Dict[str, Any], hint: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
	"""``before_send`` hook: drop credentials and request bodies."""
	request = event.get("request")
	if isinstance(request, dict):
		headers = request.get("headers")
		if isinstance(headers, dict):
			request["headers"] = {k: v for k, v in headers.items() if k.lower() not in _SCRUBBED_HEADERS}
		# Webhook payloads are full customer objects
		request.pop("data", None)
	return event


def init_sentry(service: str) -> bool:
	"""Initialise Sentry for ``service`` ("api" or "worker"); idempotent.

	Returns True when Sentry is (now) active in this process.
	"""
	if not _active():
		return False
	if getattr(init_sentry, "_service", None):
		return True
	sentry_sdk.init(
		dsn=settings.SENTRY_DSN,
		environment=settings.ENVIRONMENT,
		release=settings.SENTRY_RELEASE,
		integrations=[FastApiIntegration(), SqlalchemyIntegration()],
		traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
		profiles_sample_rate=float(settings.SENTRY_PROFILES_SAMPLE_RATE or 0),
		send_default_pii=False,
		before_send=_scrub,
	)
	sentry_sdk.set_tag("service", service)
	sentry_sdk.set_tag("component", "billing")
	init_sentry._service = service  # type: ignore[attr-defined]
	return True


def _clip(values: Optional[Mapping[str, Any]], limit: int) -> Dict[str, str]:
	return {str(k): ("" if v is None else str(v))[:limit] for k, v in (values or {}).items()}


def sentry_set_tags(tags: Mapping[str, Any]) -> None:
	if not _active():
		return
	try:
		scope = sentry_sdk.get_current_scope()
		for key, value in _clip(tags, _TAG_LIMIT).items():
			scope.set_tag(key, value)
	except Exception:
		return


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
	if not _active():
		return
	try:
		sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=dict(data or {}))
	except Exception:
		return


def sentry_metric_inc(name: str, value: int = 1, tags: Optional[Dict[str, Any]] = None) -> None:
	"""Counter for billing events (webhooks received, degraded periods, expiries)."""
	if not _active() or value <= 0:
		return
	try:
		from sentry_sdk import metrics  # type: ignore

		metrics.increment(name, value=value, tags=_clip(tags, _METRIC_TAG_LIMIT))  # type: ignore
	except Exception:
		return


def sentry_capture(exc: BaseException) -> None:
	"""Report an exception that was handled and answered locally."""
	if not _active():
		return
	try:
		sentry_sdk.capture_exception(exc)
	except Exception:
		return


__all__ = ["init_sentry", "sentry_set_tags", "sentry_breadcrumb", "sentry_metric_inc", "sentry_capture"]
