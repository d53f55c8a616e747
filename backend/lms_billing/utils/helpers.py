"""Miscellaneous helper functions."""

from __future__ import annotations

import datetime as dt
import time
from typing import Optional

MS_PER_SECOND = 1000
MS_PER_DAY = 24 * 60 * 60 * MS_PER_SECOND


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds (UTC)."""
    return int(time.time() * MS_PER_SECOND)


def days_to_ms(days: int | float) -> int:
    return int(days * MS_PER_DAY)


def ms_to_iso(value: Optional[int]) -> Optional[str]:
    """Render epoch milliseconds as an ISO8601 UTC string (``None`` passes through)."""
    if value is None:
        return None
    try:
        return dt.datetime.fromtimestamp(value / MS_PER_SECOND, tz=dt.timezone.utc).isoformat().replace("+00:00", "Z")
    except (OverflowError, OSError, ValueError):
        return None
