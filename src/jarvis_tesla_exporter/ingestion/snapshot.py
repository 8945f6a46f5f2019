"""Map one ``vehicle_data`` response to a metric snapshot.

Units follow Prometheus conventions: distances in metres, energy in joules,
power in watts. Fields missing upstream are left out of the snapshot rather
than exported as zero.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from jarvis_tesla_exporter._constants import JOULES_PER_KWH, METERS_PER_MILE, WATTS_PER_KW
from jarvis_tesla_exporter.config import Geofence
from jarvis_tesla_exporter.ingestion.geofence import locate
from jarvis_tesla_exporter.ingestion.normalize import bool_gauge, normalize_timestamp_seconds
from jarvis_tesla_exporter.models.vehicle_data import VehicleData
from jarvis_tesla_exporter.state.cache import Counter, Gauge, LabeledGauge, MetricSnapshot, MetricValue

_logger = logging.getLogger(__name__)

_METERS_PER_SECOND_PER_MPH = METERS_PER_MILE / 3600.0


def _put_gauge(metrics: dict[str, MetricValue], name: str, value: float | None, help_text: str) -> None:
    if value is not None:
        metrics[name] = Gauge(value, help_text)


def build_snapshot(
    device_id: str,
    data: VehicleData,
    *,
    geofences: Iterable[Geofence],
    captured_at: float,
) -> MetricSnapshot:
    metrics: dict[str, MetricValue] = {}

    charge = data.charge_state
    if charge is not None:
        _put_gauge(metrics, "tesla_battery_level_percent", charge.battery_level, "Battery state of charge.")
        _put_gauge(
            metrics,
            "tesla_usable_battery_level_percent",
            charge.usable_battery_level,
            "Usable battery state of charge.",
        )
        if charge.battery_range is not None:
            metrics["tesla_battery_range_meters"] = Gauge(
                charge.battery_range * METERS_PER_MILE, "Rated battery range."
            )
        _put_gauge(metrics, "tesla_charge_limit_percent", charge.charge_limit_soc, "Charge limit.")
        _put_gauge(metrics, "tesla_charger_voltage_volts", charge.charger_voltage, "Charger voltage.")
        _put_gauge(metrics, "tesla_charger_current_amperes", charge.charger_actual_current, "Charger current.")

        # Power and session energy only count while a cable is latched
        if charge.is_plugged_in:
            power_watts = (charge.charger_power or 0.0) * WATTS_PER_KW
            energy_joules = (charge.charge_energy_added or 0.0) * JOULES_PER_KWH
        else:
            power_watts = 0.0
            energy_joules = 0.0
        metrics["tesla_charger_power_watts"] = Gauge(power_watts, "Charger power while plugged in.")
        metrics["tesla_charge_energy_added_joules"] = Counter(
            energy_joules, "Energy added during the current charging session."
        )
        if charge.charging_state:
            metrics["tesla_charging_state"] = LabeledGauge(
                1.0, (("state", charge.charging_state),), "Current charging state."
            )
        _put_gauge(
            metrics,
            "tesla_charge_state_timestamp_seconds",
            normalize_timestamp_seconds(charge.timestamp),
            "When the vehicle sampled its charge state.",
        )

    drive = data.drive_state
    latitude = drive.latitude if drive is not None else None
    longitude = drive.longitude if drive is not None else None
    if drive is not None:
        speed = drive.speed if drive.speed is not None else 0.0
        metrics["tesla_speed_meters_per_second"] = Gauge(speed * _METERS_PER_SECOND_PER_MPH, "Vehicle speed.")
        _put_gauge(metrics, "tesla_heading_degrees", drive.heading, "Compass heading.")
        if drive.power is not None:
            metrics["tesla_drive_power_watts"] = Gauge(drive.power * WATTS_PER_KW, "Drive unit power.")

    vehicle_state = data.vehicle_state
    if vehicle_state is not None:
        if vehicle_state.odometer is not None:
            metrics["tesla_odometer_meters"] = Counter(vehicle_state.odometer * METERS_PER_MILE, "Odometer.")
        _put_gauge(metrics, "tesla_locked", bool_gauge(vehicle_state.locked), "1 when the doors are locked.")
        _put_gauge(metrics, "tesla_sentry_mode", bool_gauge(vehicle_state.sentry_mode), "1 when sentry mode is on.")

    climate = data.climate_state
    if climate is not None:
        _put_gauge(metrics, "tesla_inside_temperature_celsius", climate.inside_temp, "Cabin temperature.")
        _put_gauge(metrics, "tesla_outside_temperature_celsius", climate.outside_temp, "Outside temperature.")
        _put_gauge(metrics, "tesla_climate_on", bool_gauge(climate.is_climate_on), "1 when climate control runs.")

    location = locate(latitude, longitude, geofences)
    _logger.debug("Vehicle %s located in %s", device_id, location)
    metrics["tesla_location"] = LabeledGauge(1.0, (("location", location),), "Geofence the vehicle is in.")

    return MetricSnapshot(device_id=device_id, captured_at=captured_at, metrics=metrics)
