"""JSON-over-HTTP transport with status-code to exception mapping."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from jarvis_tesla_exporter._constants import USER_AGENT
from jarvis_tesla_exporter._redact import redact_for_log
from jarvis_tesla_exporter.exceptions import (
    DecodeError,
    RateLimitExceeded,
    TokenRejectedError,
    TransientNetworkError,
    VehicleUnavailableError,
)

_logger = logging.getLogger(__name__)

#: Fallback delay when a 429 carries no usable ``Retry-After`` header.
DEFAULT_RETRY_AFTER = 60.0


class Transport(Protocol):
    """Structural transport interface used by endpoint modules.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`JsonTransport`) concrete.
    """

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        bearer: str | None = None,
        json_body: Mapping[str, Any] | None = None,
    ) -> Any:
        ...


def parse_retry_after(value: str | None) -> float:
    """Seconds from a ``Retry-After`` header (delta-seconds form only)."""
    if value is None:
        return DEFAULT_RETRY_AFTER
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return DEFAULT_RETRY_AFTER


class JsonTransport:
    """HTTP transport that sends JSON, decodes JSON, and maps failures.

    Status mapping:

    * 401 → :class:`TokenRejectedError`
    * 408 → :class:`VehicleUnavailableError`
    * 429 → :class:`RateLimitExceeded`
    * other non-2xx, connection errors, timeouts → :class:`TransientNetworkError`
    * non-JSON or non-UTF-8 body → :class:`DecodeError`

    Callers that need different semantics (the token endpoint) catch and
    re-map these.
    """

    def __init__(self, http_session: aiohttp.ClientSession, *, timeout: float = 10.0) -> None:
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        bearer: str | None = None,
        json_body: Mapping[str, Any] | None = None,
    ) -> Any:
        headers: dict[str, str] = {
            "accept": "application/json",
            "user-agent": USER_AGENT,
        }
        if bearer:
            headers["authorization"] = f"Bearer {bearer}"

        _logger.debug("%s %s", method, url)
        if json_body is not None:
            _logger.debug("Request body: %s", redact_for_log(dict(json_body)))

        try:
            async with self._http.request(
                method,
                url,
                json=dict(json_body) if json_body is not None else None,
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                raw = await resp.read()
                status = resp.status
                retry_after = resp.headers.get("Retry-After")
        except aiohttp.ClientError as exc:
            raise TransientNetworkError(f"Request to {url} failed: {exc}", endpoint=url) from exc
        except asyncio.TimeoutError as exc:
            raise TransientNetworkError(f"Request to {url} timed out", endpoint=url) from exc

        if status == 401:
            raise TokenRejectedError(f"HTTP 401 from {url}", endpoint=url)
        if status == 408:
            raise VehicleUnavailableError(
                f"Vehicle unavailable (HTTP 408) at {url}",
                status_code=status,
                endpoint=url,
            )
        if status == 429:
            raise RateLimitExceeded(
                f"HTTP 429 from {url}",
                retry_after=parse_retry_after(retry_after),
            )
        excerpt = raw[:200].decode("utf-8", errors="replace")
        if status < 200 or status >= 300:
            raise TransientNetworkError(
                f"HTTP {status} from {url}: {excerpt}",
                status_code=status,
                endpoint=url,
            )

        try:
            body = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DecodeError(f"Invalid JSON from {url}: {excerpt}", endpoint=url) from exc

        _logger.debug("Response from %s: %s", url, redact_for_log(body))
        return body
