"""Helpers for safe debug logging.

The exporter handles OAuth tokens on every request. This module redacts
sensitive fields before payloads are emitted in DEBUG logs.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset(
    {
        "access_token",
        "refresh_token",
        "id_token",
        "token",
        "authorization",
        "client_secret",
        "cookie",
    }
)

_LOCATION_KEYS: frozenset[str] = frozenset({"latitude", "longitude", "native_latitude", "native_longitude"})


def redact_for_log(value: Any, *, max_string: int = 512, redact_location: bool = True, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs."""
    if _depth > 20:
        return "<max-depth>"

    if value is None:
        return None

    if isinstance(value, str):
        if value.startswith("Bearer "):
            return "Bearer <redacted>"
        if len(value) > max_string:
            return f"{value[:max_string]}…<truncated>"
        return value

    if isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, bytes):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for k, v in value.items():
            key = str(k)
            lowered = key.lower()
            if lowered in _SENSITIVE_VALUE_KEYS or (redact_location and lowered in _LOCATION_KEYS):
                redacted[key] = "<redacted>"
            else:
                redacted[key] = redact_for_log(
                    v, max_string=max_string, redact_location=redact_location, _depth=_depth + 1
                )
        return redacted

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [
            redact_for_log(v, max_string=max_string, redact_location=redact_location, _depth=_depth + 1)
            for v in value
        ]

    return repr(value)
