"""Normalization helpers.

Centralizes defensive parsing of upstream values.
"""

from __future__ import annotations

import math
from typing import Any


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def bool_gauge(value: Any) -> float | None:
    """Map a boolean-ish upstream value to 1.0/0.0 for a gauge."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    parsed = safe_float(value)
    if parsed is None:
        return None
    return 1.0 if parsed else 0.0


def normalize_timestamp_seconds(value: Any) -> float | None:
    """Normalize API timestamps to epoch seconds.

    - Empty/missing -> None
    - <= 0 -> None
    - Milliseconds (> 1e11) -> seconds
    """
    ts = safe_float(value)
    if ts is None or ts <= 0:
        return None
    if ts > 1e11:
        ts /= 1000.0
    return ts
