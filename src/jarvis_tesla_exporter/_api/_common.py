"""Shared helpers for owner-API endpoint modules.

It is internal to the exporter and may change at any time.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import ValidationError

from jarvis_tesla_exporter.exceptions import DecodeError

T = TypeVar("T")


def unwrap_response(body: Any, *, endpoint: str) -> Any:
    """Return the ``response`` member of an owner-API envelope."""
    if not isinstance(body, dict) or "response" not in body:
        raise DecodeError(f"Missing 'response' field from {endpoint}", endpoint=endpoint)
    return body["response"]


def parse_model(parser: Callable[[Any], T], payload: Any, *, endpoint: str) -> T:
    """Run a pydantic parser, mapping validation failures to :class:`DecodeError`."""
    try:
        return parser(payload)
    except ValidationError as exc:
        raise DecodeError(
            f"Unexpected payload from {endpoint}: {exc.error_count()} validation error(s)",
            endpoint=endpoint,
        ) from exc


def vehicle_url(base_url: str, vehicle_id: str, suffix: str = "") -> str:
    url = f"{base_url.rstrip('/')}/api/1/vehicles/{vehicle_id}"
    return f"{url}/{suffix}" if suffix else url
