"""Token endpoint: refresh-token grant against ``auth.tesla.com``."""

from __future__ import annotations

import logging

from jarvis_tesla_exporter._api._common import parse_model
from jarvis_tesla_exporter._constants import AUTH_REJECTED_STATUSES
from jarvis_tesla_exporter._transport import Transport
from jarvis_tesla_exporter.config import ExporterConfig
from jarvis_tesla_exporter.exceptions import (
    AuthError,
    DecodeError,
    RateLimitExceeded,
    TokenRejectedError,
    TransientAuthError,
    TransientNetworkError,
)
from jarvis_tesla_exporter.models.token import TokenGrant

_logger = logging.getLogger(__name__)


def build_refresh_request(config: ExporterConfig, refresh_token: str) -> dict[str, str]:
    return {
        "grant_type": "refresh_token",
        "scope": config.scope,
        "client_id": config.client_id,
        "refresh_token": refresh_token,
    }


async def refresh_access_token(config: ExporterConfig, transport: Transport, refresh_token: str) -> TokenGrant:
    """Exchange *refresh_token* for a new access token.

    Raises
    ------
    AuthError
        The endpoint rejected the refresh token (400/401/403).
    TransientAuthError
        Anything retryable: network failure, timeout, 5xx, 429, garbage body.
    """
    _logger.info("Fetching access token...")
    endpoint = config.auth_url
    try:
        body = await transport.request_json(
            "POST",
            endpoint,
            json_body=build_refresh_request(config, refresh_token),
        )
    except TokenRejectedError as exc:
        raise AuthError(f"Refresh token rejected by {endpoint}") from exc
    except TransientNetworkError as exc:
        if exc.status_code in AUTH_REJECTED_STATUSES:
            raise AuthError(f"Refresh token rejected by {endpoint} (HTTP {exc.status_code})") from exc
        raise TransientAuthError(f"Token refresh failed: {exc}") from exc
    except RateLimitExceeded as exc:
        raise TransientAuthError(f"Token refresh rate limited, retry after {exc.retry_after:.0f}s") from exc
    except DecodeError as exc:
        raise TransientAuthError(f"Token refresh returned an invalid body: {exc}") from exc

    try:
        return parse_model(TokenGrant.model_validate, body, endpoint=endpoint)
    except DecodeError as exc:
        raise TransientAuthError(f"Token refresh returned an invalid body: {exc}") from exc
