"""Per-vehicle lifecycle records and the registry that owns them."""

from __future__ import annotations

import logging
from enum import IntEnum, StrEnum

from pydantic import BaseModel, ConfigDict

from jarvis_tesla_exporter._constants import DEFAULT_DISPLAY_NAME
from jarvis_tesla_exporter.models.vehicle import ApiVehicleState, Vehicle

_logger = logging.getLogger(__name__)


class LifecycleState(StrEnum):
    UNKNOWN = "unknown"
    ASLEEP = "asleep"
    WAKING = "waking"
    ONLINE = "online"
    UNREACHABLE = "unreachable"


class Availability(IntEnum):
    """Upstream availability as exported on the availability gauge."""

    ONLINE = 1
    ASLEEP = 0
    OFFLINE = -1
    IN_SERVICE = -2


def availability_of(vehicle: Vehicle) -> Availability:
    if vehicle.in_service:
        return Availability.IN_SERVICE
    if vehicle.state == ApiVehicleState.OFFLINE:
        return Availability.OFFLINE
    if vehicle.state == ApiVehicleState.ASLEEP:
        return Availability.ASLEEP
    return Availability.ONLINE


class Device(BaseModel):
    """Mutable record for one vehicle. Only the poller changes it."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str
    vin: str = ""
    display_name: str = DEFAULT_DISPLAY_NAME
    state: LifecycleState = LifecycleState.UNKNOWN
    availability: Availability | None = None
    last_success_at: float | None = None
    consecutive_failures: int = 0
    asleep_cycles: int = 0
    waking_cycles: int = 0
    idle_cycles: int = 0
    # False once telemetry shows the vehicle parked and not charging
    active: bool = True
    last_odometer: float | None = None
    last_wake_at: float | None = None
    unreachable_attempts: int = 0
    next_probe_at: float | None = None
    retry_at: float | None = None
    in_flight: bool = False

    def transition(self, state: LifecycleState) -> None:
        if state == self.state:
            return
        _logger.info("Vehicle %s (%s): %s -> %s", self.id, self.display_name, self.state, state)
        self.state = state
        if state != LifecycleState.ASLEEP:
            self.asleep_cycles = 0
        if state != LifecycleState.WAKING:
            self.waking_cycles = 0
        if state != LifecycleState.ONLINE:
            self.idle_cycles = 0

    def update_identity(self, vehicle: Vehicle) -> None:
        if vehicle.vin:
            self.vin = vehicle.vin
        if vehicle.display_name:
            self.display_name = vehicle.display_name
        self.availability = availability_of(vehicle)


class DeviceRegistry:
    """Arena of device records keyed by vehicle id.

    Records are created on first sight and never removed, so re-discovery
    keeps failure counters and lifecycle state.
    """

    def __init__(self) -> None:
        self._devices: dict[str, Device] = {}
        self.account_error: str | None = None

    def get_or_create(self, vehicle_id: str, *, vehicle: Vehicle | None = None) -> Device:
        device = self._devices.get(vehicle_id)
        if device is None:
            device = Device(id=vehicle_id)
            self._devices[vehicle_id] = device
            _logger.info("Tracking vehicle %s", vehicle_id)
        if vehicle is not None:
            device.update_identity(vehicle)
        return device

    def get(self, vehicle_id: str) -> Device | None:
        return self._devices.get(vehicle_id)

    def all(self) -> list[Device]:
        return list(self._devices.values())

    def __contains__(self, vehicle_id: object) -> bool:
        return vehicle_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)
