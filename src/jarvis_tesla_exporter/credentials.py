"""OAuth credential ownership and refresh."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from jarvis_tesla_exporter.exceptions import AuthError
from jarvis_tesla_exporter.models.token import TokenGrant

_logger = logging.getLogger(__name__)

#: Default margin in seconds a returned token must remain valid for.
DEFAULT_SAFETY_MARGIN: float = 30.0


class Credential(BaseModel):
    """Immutable access/refresh token pair.

    Parameters
    ----------
    access_token : str
        Bearer token for data endpoints.
    refresh_token : str
        Token used to obtain the next access token.
    expires_at : float
        Epoch seconds at which ``access_token`` stops working.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    access_token: str
    refresh_token: str = Field(min_length=1)
    expires_at: float

    def expires_within(self, margin: float, now: float) -> bool:
        return (self.expires_at - now) <= margin

    def seconds_left(self, now: float) -> float:
        return self.expires_at - now


class TokenRefresher(Protocol):
    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        ...


class CredentialManager:
    """Hands out valid access tokens and refreshes them before they expire.

    At most one refresh runs at a time: callers arriving while a refresh is in
    flight await the same task instead of issuing their own request.

    An :class:`~jarvis_tesla_exporter.exceptions.AuthError` from the token
    endpoint is sticky. Every later call raises it again without contacting
    the upstream until :meth:`reconfigure` installs a new refresh token.
    """

    def __init__(
        self,
        refresher: TokenRefresher,
        refresh_token: str,
        *,
        safety_margin: float = DEFAULT_SAFETY_MARGIN,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._refresher = refresher
        self._refresh_token = refresh_token
        self._safety_margin = safety_margin
        self._clock = clock
        self._credential: Credential | None = None
        self._inflight: asyncio.Task[Credential] | None = None
        self._terminal_error: AuthError | None = None
        self.refresh_count = 0

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def refresh_in_progress(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def terminal_error(self) -> AuthError | None:
        return self._terminal_error

    async def get_valid_token(self) -> Credential:
        """Return a credential valid for at least the safety margin."""
        if self._terminal_error is not None:
            raise AuthError(str(self._terminal_error)) from self._terminal_error
        credential = self._credential
        if credential is not None and not credential.expires_within(self._safety_margin, self._clock()):
            return credential
        return await self._refresh()

    def invalidate(self) -> None:
        """Force the next :meth:`get_valid_token` to refresh (e.g. after a 401)."""
        credential = self._credential
        if credential is not None:
            self._credential = credential.model_copy(update={"expires_at": 0.0})

    def reconfigure(self, refresh_token: str) -> None:
        """Install a new refresh token, clearing a terminal auth failure."""
        self._refresh_token = refresh_token
        self._credential = None
        self._terminal_error = None

    async def _refresh(self) -> Credential:
        task = self._inflight
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._do_refresh())
            task.add_done_callback(self._on_refresh_done)
            self._inflight = task
        # Shielded so one cancelled caller does not abort the refresh for the others
        return await asyncio.shield(task)

    def _on_refresh_done(self, task: asyncio.Task[Credential]) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter was cancelled
            task.exception()

    async def _do_refresh(self) -> Credential:
        refresh_token = (
            self._credential.refresh_token if self._credential is not None else self._refresh_token
        )
        try:
            grant = await self._refresher.refresh_token(refresh_token)
        except AuthError as exc:
            _logger.error("Refresh token rejected; polling halts until it is reconfigured")
            self._terminal_error = exc
            raise

        now = self._clock()
        credential = Credential(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or refresh_token,
            expires_at=now + grant.expires_in,
        )
        self._credential = credential
        self._refresh_token = credential.refresh_token
        self.refresh_count += 1
        _logger.info("Access token refreshed, valid for %.0fs", grant.expires_in)
        return credential
