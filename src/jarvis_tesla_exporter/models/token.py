"""OAuth token response model."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class TokenGrant(BaseModel):
    """Token returned by the refresh-token grant.

    Parameters
    ----------
    access_token : str
        Bearer token for the owner API.
    refresh_token : str or None
        Rotated refresh token. ``None`` when the endpoint did not rotate it.
    expires_in : float
        Lifetime of ``access_token`` in seconds.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_in: float = Field(gt=0)
    token_type: str = "Bearer"
