"""Conversion between daemon timestamps and client timestamps.

The daemon reports ``message.date`` straight from the Messages database:
nanoseconds since 2001-01-01 UTC.  Clients expect integer milliseconds since
the Unix epoch.  Both directions truncate so that a converted value can be
used as a pagination cursor without moving across a boundary record.
"""

from __future__ import annotations

import math
import time
from fractions import Fraction
from typing import Any

APPLE_EPOCH_OFFSET_MS = 978_307_200_000
NS_PER_MS = 1_000_000

# Values above this are daemon nanoseconds, values in [CLIENT_MS_FLOOR, UPSTREAM_THRESHOLD]
# are already client millis, smaller positive values are nanoseconds close to 2001.
UPSTREAM_THRESHOLD = 10**15
CLIENT_MS_FLOOR = 10**12


def now_ms() -> int:
    return int(time.time() * 1000)


def _coerce_number(value: Any) -> int | float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            pass
        try:
            parsed = float(text)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def _upstream_to_client(value: int | float) -> int:
    if isinstance(value, int):
        return value // NS_PER_MS + APPLE_EPOCH_OFFSET_MS
    return math.trunc(Fraction(value) / NS_PER_MS) + APPLE_EPOCH_OFFSET_MS


def to_client_time(raw: Any) -> int | None:
    """Return milliseconds since the Unix epoch, or ``None`` for missing/invalid input.

    Never raises.  Zero, negative, non-numeric and non-finite input all map to
    ``None``.
    """

    value = _coerce_number(raw)
    if value is None or value <= 0:
        return None
    if value > UPSTREAM_THRESHOLD:
        return _upstream_to_client(value)
    if value >= CLIENT_MS_FLOOR:
        return math.trunc(value)
    return _upstream_to_client(value)


def to_upstream_time(millis: Any) -> int:
    """Convert client millis to daemon nanoseconds since 2001, clamped at zero."""

    value = _coerce_number(millis)
    if value is None:
        return 0
    if isinstance(value, int):
        return max(0, value - APPLE_EPOCH_OFFSET_MS) * NS_PER_MS
    delta = Fraction(value) - APPLE_EPOCH_OFFSET_MS
    if delta <= 0:
        return 0
    return math.trunc(delta * NS_PER_MS)
