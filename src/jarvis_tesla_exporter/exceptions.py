"""Custom exception hierarchy for the exporter."""

from __future__ import annotations


class TeslaExporterError(Exception):
    """Base exception for all exporter errors."""


class ConfigError(TeslaExporterError):
    """Invalid or missing configuration."""


class AuthError(TeslaExporterError):
    """The token endpoint rejected the refresh token.

    Terminal for the configured credential: polling for the account stops
    until an operator supplies a new refresh token.
    """


class TransientAuthError(TeslaExporterError):
    """Token refresh failed for a retryable reason (network, 5xx)."""


class TokenRejectedError(TransientAuthError):
    """A data endpoint answered 401 for the current access token.

    The access token is discarded and the request retried once with a
    freshly refreshed token.
    """

    def __init__(self, message: str, *, endpoint: str = "") -> None:
        self.endpoint = endpoint
        super().__init__(message)


class TransientNetworkError(TeslaExporterError):
    """HTTP-level failure (connection error, timeout, 5xx)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class VehicleUnavailableError(TransientNetworkError):
    """The vehicle did not answer (HTTP 408): it is asleep or offline.

    Raised by telemetry endpoints instead of waking the vehicle. The poller
    treats this as a sleep signal, not as a failure.
    """


class RateLimitExceeded(TeslaExporterError):
    """Deferral signal: retry the request after ``retry_after`` seconds.

    Raised for a local rate-limiter refusal as well as an upstream 429.
    Never counted as a poll failure.
    """

    def __init__(self, message: str, *, retry_after: float, endpoint_class: str = "") -> None:
        self.retry_after = max(0.0, retry_after)
        self.endpoint_class = endpoint_class
        super().__init__(message)


class DecodeError(TeslaExporterError):
    """The upstream answered with a malformed body."""

    def __init__(self, message: str, *, endpoint: str = "") -> None:
        self.endpoint = endpoint
        super().__init__(message)
