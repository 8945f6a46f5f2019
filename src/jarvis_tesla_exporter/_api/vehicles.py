"""Vehicle list, presence and wake endpoints.

Endpoints:
  - GET  /api/1/vehicles
  - GET  /api/1/vehicles/{id}
  - POST /api/1/vehicles/{id}/wake_up

The first two never wake a vehicle.
"""

from __future__ import annotations

import logging

from jarvis_tesla_exporter._api._common import parse_model, unwrap_response, vehicle_url
from jarvis_tesla_exporter._transport import Transport
from jarvis_tesla_exporter.config import ExporterConfig
from jarvis_tesla_exporter.exceptions import DecodeError
from jarvis_tesla_exporter.models.vehicle import Vehicle, vehicle_from_payload

_logger = logging.getLogger(__name__)


async def fetch_vehicles(config: ExporterConfig, transport: Transport, access_token: str) -> list[Vehicle]:
    """Fetch all vehicles associated with the account."""
    endpoint = f"{config.api_base_url.rstrip('/')}/api/1/vehicles"
    body = await transport.request_json("GET", endpoint, bearer=access_token)
    items = unwrap_response(body, endpoint=endpoint)
    if not isinstance(items, list):
        raise DecodeError(f"Expected a list of vehicles from {endpoint}", endpoint=endpoint)
    vehicles = [parse_model(vehicle_from_payload, item, endpoint=endpoint) for item in items]
    _logger.debug("Found %d vehicle(s)", len(vehicles))
    return vehicles


async def fetch_vehicle(config: ExporterConfig, transport: Transport, access_token: str, vehicle_id: str) -> Vehicle:
    """Fetch one vehicle's summary (its wake state) without waking it."""
    endpoint = vehicle_url(config.api_base_url, vehicle_id)
    body = await transport.request_json("GET", endpoint, bearer=access_token)
    return parse_model(vehicle_from_payload, unwrap_response(body, endpoint=endpoint), endpoint=endpoint)


async def wake_up(config: ExporterConfig, transport: Transport, access_token: str, vehicle_id: str) -> Vehicle:
    """Ask the vehicle to wake up. Returns immediately; waking takes a while."""
    endpoint = vehicle_url(config.api_base_url, vehicle_id, "wake_up")
    _logger.info("Sending wake_up to vehicle %s", vehicle_id)
    body = await transport.request_json("POST", endpoint, bearer=access_token)
    return parse_model(vehicle_from_payload, unwrap_response(body, endpoint=endpoint), endpoint=endpoint)
