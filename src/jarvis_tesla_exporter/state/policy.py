"""Deterministic polling policy.

Pure functions of ``(device, now, config)``: no I/O, no clock reads, no
mutation. The poller applies the outcome of the action it gets back.
"""

from __future__ import annotations

from enum import StrEnum

from jarvis_tesla_exporter.config import ExporterConfig, WakePolicy
from jarvis_tesla_exporter.models.vehicle_data import VehicleData
from jarvis_tesla_exporter.state.device import Device, LifecycleState


class PollAction(StrEnum):
    SKIP = "skip"
    PRESENCE_CHECK = "presence_check"
    WAKE = "wake"
    IDLE_CHECK = "idle_check"
    FETCH_TELEMETRY = "fetch_telemetry"
    PROBE = "probe"


_MOVING_SHIFT_STATES = frozenset({"D", "R", "N"})


def is_active(data: VehicleData, last_odometer: float | None) -> bool:
    """Whether telemetry shows the vehicle in use, moving or charging.

    Reading ``vehicle_data`` keeps a vehicle awake, so inactive vehicles are
    only checked for presence between periodic full fetches.
    """
    drive = data.drive_state
    if drive is not None:
        if drive.shift_state in _MOVING_SHIFT_STATES:
            return True
        if (drive.speed or 0.0) > 0 or (drive.power or 0.0) != 0:
            return True
    charge = data.charge_state
    if charge is not None and charge.is_plugged_in and (charge.charger_power or 0.0) > 0:
        return True
    odometer = data.vehicle_state.odometer if data.vehicle_state is not None else None
    return odometer is not None and last_odometer is not None and odometer > last_odometer


def wake_due(device: Device, now: float, config: ExporterConfig) -> bool:
    """Whether the wake policy allows a wake request right now."""
    if config.wake_policy != WakePolicy.SCHEDULED:
        return False
    if device.last_wake_at is None:
        return True
    return now - device.last_wake_at >= config.wake_interval


def decide(device: Device, now: float, config: ExporterConfig) -> PollAction:
    """Pick the action for one poll cycle.

    Policy:
    - Unknown: check presence (never wakes).
    - Asleep: wake only when the wake policy is scheduled and the wake interval
      has elapsed; otherwise re-check presence every ``presence_check_cycles``
      cycles and skip in between.
    - Waking: fetch telemetry.
    - Online: fetch telemetry, unless the last fetch showed the vehicle idle;
      then check presence only, with a full fetch every
      ``idle_full_fetch_cycles`` cycles.
    - Unreachable: probe once the cooldown is over, skip until then.
    """
    state = device.state
    if state == LifecycleState.UNKNOWN:
        return PollAction.PRESENCE_CHECK
    if state == LifecycleState.ASLEEP:
        if wake_due(device, now, config):
            return PollAction.WAKE
        if device.asleep_cycles >= config.presence_check_cycles:
            return PollAction.PRESENCE_CHECK
        return PollAction.SKIP
    if state == LifecycleState.ONLINE and not device.active:
        if device.idle_cycles < config.idle_full_fetch_cycles:
            return PollAction.IDLE_CHECK
        return PollAction.FETCH_TELEMETRY
    if state in (LifecycleState.WAKING, LifecycleState.ONLINE):
        return PollAction.FETCH_TELEMETRY
    if device.next_probe_at is None or now >= device.next_probe_at:
        return PollAction.PROBE
    return PollAction.SKIP


def retry_delay(failures: int, config: ExporterConfig) -> float:
    """Delay before retrying after ``failures`` consecutive failures (below threshold)."""
    return min(config.retry_base * 2 ** max(failures - 1, 0), config.backoff_max)


def probe_backoff(attempt: int, config: ExporterConfig) -> float:
    """Cooldown before the ``attempt``-th probe of an unreachable device."""
    return min(config.backoff_base * 2 ** max(attempt - 1, 0), config.backoff_max)


def next_delay(device: Device, now: float, config: ExporterConfig) -> float:
    """Seconds until the device's next poll cycle."""
    if device.retry_at is not None and device.retry_at > now:
        return device.retry_at - now
    state = device.state
    if state == LifecycleState.ONLINE:
        return config.online_poll_interval
    if state == LifecycleState.WAKING:
        return config.waking_poll_interval
    if state == LifecycleState.ASLEEP:
        return config.asleep_poll_interval
    if state == LifecycleState.UNREACHABLE:
        if device.next_probe_at is None:
            return probe_backoff(max(device.unreachable_attempts, 1), config)
        return max(device.next_probe_at - now, 0.0)
    return config.online_poll_interval
