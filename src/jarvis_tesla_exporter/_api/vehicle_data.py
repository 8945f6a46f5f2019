"""Telemetry endpoint: GET /api/1/vehicles/{id}/vehicle_data.

Answers 408 for a sleeping vehicle instead of waking it; the transport maps
that to :class:`~jarvis_tesla_exporter.exceptions.VehicleUnavailableError`.
"""

from __future__ import annotations

from jarvis_tesla_exporter._api._common import parse_model, unwrap_response, vehicle_url
from jarvis_tesla_exporter._transport import Transport
from jarvis_tesla_exporter.config import ExporterConfig
from jarvis_tesla_exporter.models.vehicle_data import VehicleData


async def fetch_vehicle_data(
    config: ExporterConfig,
    transport: Transport,
    access_token: str,
    vehicle_id: str,
) -> VehicleData:
    endpoint = vehicle_url(config.api_base_url, vehicle_id, "vehicle_data")
    body = await transport.request_json("GET", endpoint, bearer=access_token)
    return parse_model(VehicleData.model_validate, unwrap_response(body, endpoint=endpoint), endpoint=endpoint)
