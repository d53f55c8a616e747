"""Billing period resolution.

Stripe reports ``current_period_start``/``current_period_end`` in seconds.
Depending on API version and payload style the values live under
snake_case keys, camelCase keys (thin payloads) or on the first
subscription item. ``resolve_period`` turns whatever is available into a
validated ``[start, end]`` pair in epoch milliseconds:

1. provider values when both are positive numbers,
2. otherwise the caller's fallback (the existing local row) when both of
   its fields are positive,
3. otherwise a degraded 30-day window starting now, which is logged.

Provider values that convert to a non-finite instant, or an end before
the start, raise :class:`PeriodValidationError`.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from lms_billing.core.errors import PeriodValidationError
from lms_billing.core.observability import sentry_metric_inc
from lms_billing.utils.helpers import MS_PER_SECOND, days_to_ms, now_ms

logger = logging.getLogger(__name__)

DEGRADED_WINDOW_DAYS = 30

_PERIOD_KEYS = (
    ("current_period_start", "current_period_end"),
    ("currentPeriodStart", "currentPeriodEnd"),
)


@dataclass(frozen=True)
class PeriodFallback:
    start_ms: Optional[int]
    end_ms: Optional[int]

    @property
    def usable(self) -> bool:
        return bool(self.start_ms and self.end_ms and self.start_ms > 0 and self.end_ms > 0)


@dataclass(frozen=True)
class ResolvedPeriod:
    start_ms: int
    end_ms: int
    source: str  # "provider" | "fallback" | "degraded"

    @property
    def degraded(self) -> bool:
        return self.source == "degraded"


def coerce_number(value: Any) -> Optional[float]:
    """Return ``value`` as a float, or ``None`` when it is missing or not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _first_item(raw: Mapping[str, Any]) -> Mapping[str, Any]:
    items = raw.get("items")
    data = items.get("data") if isinstance(items, Mapping) else None
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        return data[0]
    return {}


def read_raw_period(raw: Mapping[str, Any]) -> tuple[Optional[float], Optional[float]]:
    """Probe every known location of the period fields, in seconds."""
    candidates = [raw, _first_item(raw)]
    start: Optional[float] = None
    end: Optional[float] = None
    for source in candidates:
        for start_key, end_key in _PERIOD_KEYS:
            if start is None:
                start = coerce_number(source.get(start_key))
            if end is None:
                end = coerce_number(source.get(end_key))
        if start is not None and end is not None:
            break
    return start, end


def _positive(value: Optional[float]) -> bool:
    return value is not None and value > 0


def _to_ms(seconds: float, field: str) -> int:
    converted = seconds * MS_PER_SECOND
    if not math.isfinite(converted) or converted <= 0:
        raise PeriodValidationError(f"{field} is not a valid instant: {seconds!r}")
    return int(round(converted))


def resolve_period(
    raw_start_s: Optional[float],
    raw_end_s: Optional[float],
    fallback: Optional[PeriodFallback] = None,
    *,
    clock: Callable[[], int] = now_ms,
    subscription_id: Optional[str] = None,
) -> ResolvedPeriod:
    if _positive(raw_start_s) and _positive(raw_end_s):
        start_ms = _to_ms(raw_start_s, "current_period_start")  # type: ignore[arg-type]
        end_ms = _to_ms(raw_end_s, "current_period_end")  # type: ignore[arg-type]
        if end_ms < start_ms:
            raise PeriodValidationError(
                "current_period_end precedes current_period_start",
                details={"start": start_ms, "end": end_ms, "subscription_id": subscription_id},
            )
        return ResolvedPeriod(start_ms, end_ms, "provider")

    if fallback is not None and fallback.usable:
        logger.info(
            "[stripe] period missing on provider object; keeping stored period sub=%s start=%s end=%s",
            subscription_id, fallback.start_ms, fallback.end_ms,
        )
        return ResolvedPeriod(int(fallback.start_ms), int(fallback.end_ms), "fallback")  # type: ignore[arg-type]

    start_ms = clock()
    logger.warning(
        "[stripe] period missing and no stored period; using degraded %d-day window sub=%s",
        DEGRADED_WINDOW_DAYS, subscription_id,
    )
    sentry_metric_inc("billing.period.degraded")
    return ResolvedPeriod(start_ms, start_ms + days_to_ms(DEGRADED_WINDOW_DAYS), "degraded")

