"""Telemetry model for ``/api/1/vehicles/{id}/vehicle_data``.

Only the fields the exporter publishes are modelled; everything else stays
available in ``raw``. All numeric fields are optional because the upstream
omits whole sub-objects (and individual fields) depending on vehicle
firmware and state.
"""

from __future__ import annotations

from typing import Any

from pydantic import field_validator

from jarvis_tesla_exporter.ingestion.normalize import safe_float
from jarvis_tesla_exporter.models._base import TeslaBaseModel
from jarvis_tesla_exporter.models.vehicle import ApiVehicleState


class ChargeState(TeslaBaseModel):
    battery_level: float | None = None
    usable_battery_level: float | None = None
    battery_range: float | None = None
    """Rated range in miles."""
    charge_energy_added: float | None = None
    """Energy added in the current session, kWh."""
    charge_limit_soc: float | None = None
    charge_rate: float | None = None
    charger_actual_current: float | None = None
    charger_phases: float | None = None
    charger_power: float | None = None
    """Charger power in kW."""
    charger_voltage: float | None = None
    charging_state: str | None = None
    charge_port_latch: str | None = None
    timestamp: int | None = None

    @field_validator(
        "battery_level",
        "usable_battery_level",
        "battery_range",
        "charge_energy_added",
        "charge_limit_soc",
        "charge_rate",
        "charger_actual_current",
        "charger_phases",
        "charger_power",
        "charger_voltage",
        mode="before",
    )
    @classmethod
    def _coerce_float(cls, value: Any) -> float | None:
        return safe_float(value)

    @property
    def is_plugged_in(self) -> bool:
        return self.charge_port_latch == "Engaged"


class DriveState(TeslaBaseModel):
    latitude: float | None = None
    longitude: float | None = None
    heading: float | None = None
    speed: float | None = None
    """Speed in mph; ``None`` while parked."""
    power: float | None = None
    shift_state: str | None = None
    gps_as_of: int | None = None
    timestamp: int | None = None

    @field_validator("latitude", "longitude", "heading", "speed", "power", mode="before")
    @classmethod
    def _coerce_float(cls, value: Any) -> float | None:
        return safe_float(value)


class VehicleStateData(TeslaBaseModel):
    """The ``vehicle_state`` sub-object (odometer, locks, firmware)."""

    odometer: float | None = None
    """Odometer in miles."""
    locked: bool | None = None
    sentry_mode: bool | None = None
    car_version: str | None = None

    @field_validator("odometer", mode="before")
    @classmethod
    def _coerce_float(cls, value: Any) -> float | None:
        return safe_float(value)


class ClimateState(TeslaBaseModel):
    inside_temp: float | None = None
    outside_temp: float | None = None
    is_climate_on: bool | None = None

    @field_validator("inside_temp", "outside_temp", mode="before")
    @classmethod
    def _coerce_float(cls, value: Any) -> float | None:
        return safe_float(value)


class VehicleData(TeslaBaseModel):
    """Full telemetry for one vehicle."""

    id: str
    vin: str = ""
    display_name: str | None = None
    state: ApiVehicleState = ApiVehicleState.OTHER
    in_service: bool = False
    charge_state: ChargeState | None = None
    drive_state: DriveState | None = None
    vehicle_state: VehicleStateData | None = None
    climate_state: ClimateState | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("state", mode="before")
    @classmethod
    def _coerce_state(cls, value: Any) -> ApiVehicleState:
        return ApiVehicleState(str(value))
