"""Vehicle summary model (vehicle list and single-vehicle endpoints)."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import field_validator

from jarvis_tesla_exporter.models._base import TeslaBaseModel


class ApiVehicleState(StrEnum):
    """Connectivity state reported by the owner API.

    Values the API sends that have no mapped member resolve to ``OTHER``.
    """

    ONLINE = "online"
    ASLEEP = "asleep"
    OFFLINE = "offline"
    CHARGING = "charging"
    DRIVING = "driving"
    UPDATING = "updating"
    OTHER = "other"

    @classmethod
    def _missing_(cls, value: object) -> ApiVehicleState:
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return cls.OTHER


_AWAKE_STATES = frozenset(
    {ApiVehicleState.ONLINE, ApiVehicleState.CHARGING, ApiVehicleState.DRIVING, ApiVehicleState.UPDATING}
)


class Vehicle(TeslaBaseModel):
    """A vehicle as returned by ``/api/1/vehicles[/{id}]``.

    Querying this endpoint never wakes the vehicle, which is what makes it
    usable as a presence check.
    """

    id: str
    """Owner-API id used in per-vehicle URLs."""
    vehicle_id: str = ""
    """Id used by the streaming API."""
    vin: str = ""
    display_name: str | None = None
    state: ApiVehicleState = ApiVehicleState.OTHER
    in_service: bool = False

    @field_validator("id", "vehicle_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        if isinstance(value, bool):
            raise ValueError("id must be a string or integer")
        return str(value)

    @field_validator("state", mode="before")
    @classmethod
    def _coerce_state(cls, value: Any) -> ApiVehicleState:
        return ApiVehicleState(str(value))

    @property
    def is_awake(self) -> bool:
        return self.state in _AWAKE_STATES and not self.in_service


def vehicle_from_payload(payload: Any) -> Vehicle:
    """Build a :class:`Vehicle`, preferring the string id ``id_s`` when present."""
    if isinstance(payload, dict) and payload.get("id_s"):
        payload = {**payload, "id": payload["id_s"]}
    return Vehicle.model_validate(payload)
