"""Upstream vehicle API: the pluggable interface and the Tesla owner-API client."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import aiohttp

from jarvis_tesla_exporter._api import auth as _auth_api
from jarvis_tesla_exporter._api import vehicle_data as _vehicle_data_api
from jarvis_tesla_exporter._api import vehicles as _vehicles_api
from jarvis_tesla_exporter._transport import JsonTransport, Transport
from jarvis_tesla_exporter.config import ExporterConfig
from jarvis_tesla_exporter.exceptions import TeslaExporterError
from jarvis_tesla_exporter.models.token import TokenGrant
from jarvis_tesla_exporter.models.vehicle import Vehicle
from jarvis_tesla_exporter.models.vehicle_data import VehicleData

_logger = logging.getLogger(__name__)


class VehicleApi(Protocol):
    """What the polling engine needs from a telematics provider.

    The engine only talks to this protocol, so tests (and other providers)
    can plug in without touching the poller.
    """

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        ...

    async def list_vehicles(self, access_token: str) -> list[Vehicle]:
        ...

    async def get_vehicle(self, access_token: str, vehicle_id: str) -> Vehicle:
        """Presence check: must not wake the vehicle."""
        ...

    async def get_vehicle_data(self, access_token: str, vehicle_id: str) -> VehicleData:
        ...

    async def wake_up(self, access_token: str, vehicle_id: str) -> Vehicle:
        ...


class TeslaClient:
    """Async client for the Tesla owner API.

    Usage::

        async with TeslaClient(config) as client:
            grant = await client.refresh_token(config.refresh_token)
            vehicles = await client.list_vehicles(grant.access_token)
    """

    def __init__(
        self,
        config: ExporterConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        transport: Transport | None = None,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._transport: Transport | None = transport

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> TeslaClient:
        if self._transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._transport = JsonTransport(self._http_session, timeout=self._config.request_timeout)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise TeslaExporterError("Client not initialized. Use 'async with TeslaClient(...) as client:'")
        return self._transport

    # ------------------------------------------------------------------
    # VehicleApi
    # ------------------------------------------------------------------

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        return await _auth_api.refresh_access_token(self._config, self._require_transport(), refresh_token)

    async def list_vehicles(self, access_token: str) -> list[Vehicle]:
        return await _vehicles_api.fetch_vehicles(self._config, self._require_transport(), access_token)

    async def get_vehicle(self, access_token: str, vehicle_id: str) -> Vehicle:
        return await _vehicles_api.fetch_vehicle(self._config, self._require_transport(), access_token, vehicle_id)

    async def get_vehicle_data(self, access_token: str, vehicle_id: str) -> VehicleData:
        _logger.debug("Fetching vehicle data for %s", vehicle_id)
        return await _vehicle_data_api.fetch_vehicle_data(
            self._config,
            self._require_transport(),
            access_token,
            vehicle_id,
        )

    async def wake_up(self, access_token: str, vehicle_id: str) -> Vehicle:
        return await _vehicles_api.wake_up(self._config, self._require_transport(), access_token, vehicle_id)
