"""Upstream API response models."""

from jarvis_tesla_exporter.models.token import TokenGrant
from jarvis_tesla_exporter.models.vehicle import ApiVehicleState, Vehicle, vehicle_from_payload
from jarvis_tesla_exporter.models.vehicle_data import (
    ChargeState,
    ClimateState,
    DriveState,
    VehicleData,
    VehicleStateData,
)

__all__ = [
    "ApiVehicleState",
    "ChargeState",
    "ClimateState",
    "DriveState",
    "TokenGrant",
    "Vehicle",
    "VehicleData",
    "VehicleStateData",
    "vehicle_from_payload",
]
