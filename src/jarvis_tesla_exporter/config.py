"""Exporter configuration."""

from __future__ import annotations

import dataclasses
import logging
import os
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic.alias_generators import to_snake

from jarvis_tesla_exporter._constants import API_BASE_URL, AUTH_URL, CLIENT_ID, SCOPE
from jarvis_tesla_exporter.exceptions import ConfigError
from jarvis_tesla_exporter.ratelimit import BucketSpec, EndpointClass


class WakePolicy(StrEnum):
    """Whether the exporter may wake a sleeping vehicle."""

    NEVER = "never"
    SCHEDULED = "scheduled"


class StaleMode(StrEnum):
    """How stale snapshots are presented on scrape."""

    FLAG = "flag"
    OMIT = "omit"


@dataclasses.dataclass(frozen=True)
class Geofence:
    """Named circular area; a vehicle inside it is reported at ``location``."""

    location: str
    latitude: float
    longitude: float
    radius_meters: float


def _default_telemetry_rate() -> BucketSpec:
    # Presence check and telemetry fetch run back to back in one cycle
    return BucketSpec(capacity=20, refill_per_second=20 / 60)


def _default_wake_rate() -> BucketSpec:
    return BucketSpec(capacity=1, refill_per_second=1 / 900, min_interval=60.0)


def _split_ids(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _parse_bucket(value: str, name: str) -> BucketSpec:
    """Parse ``capacity:refill_per_second[:min_interval]``."""
    parts = value.split(":")
    if len(parts) not in (2, 3):
        raise ConfigError(f"{name} must look like 'capacity:refill_per_second[:min_interval]', got {value!r}")
    try:
        return BucketSpec(
            capacity=int(parts[0]),
            refill_per_second=float(parts[1]),
            min_interval=float(parts[2]) if len(parts) == 3 else 0.0,
        )
    except ValueError as exc:
        raise ConfigError(f"invalid {name}: {exc}") from exc


@dataclasses.dataclass(frozen=True)
class ExporterConfig:
    """Exporter configuration, loaded once at startup.

    Parameters
    ----------
    refresh_token : str
        Long-lived OAuth refresh token for the Tesla account.
    vehicle_ids : tuple of str
        Allow-list of vehicle ids to poll. Empty means every vehicle
        returned by the vehicle list endpoint.
    geofences : tuple of Geofence
        Areas used for the ``tesla_location`` label.
    online_poll_interval : float
        Seconds between polls of an online vehicle.
    waking_poll_interval : float
        Seconds between polls while a wake request is pending.
    asleep_poll_interval : float
        Length of one poll cycle for an asleep vehicle.
    presence_check_cycles : int
        An asleep vehicle gets a presence check every this many cycles;
        the cycles in between are skipped without any request.
    idle_full_fetch_cycles : int
        An online vehicle whose last telemetry showed it parked and not
        charging gets a presence check instead of a telemetry fetch, so it
        can fall asleep; full telemetry is fetched every this many cycles.
        ``0`` fetches full telemetry on every cycle.
    wake_policy : WakePolicy
        ``never`` leaves sleeping vehicles alone; ``scheduled`` wakes them
        at most once per ``wake_interval`` seconds.
    failure_threshold : int
        Consecutive failures before a vehicle is marked unreachable.
    retry_base : float
        First retry delay after a failure; doubles per failure.
    backoff_base, backoff_max : float
        Exponential re-probe delay for unreachable vehicles.
    stale_after : float
        Snapshot age in seconds after which it is considered stale.
    stale_mode : StaleMode
        Flag stale snapshots with ``tesla_snapshot_stale`` or omit them.
    token_safety_margin : float
        Access tokens are refreshed when they expire within this many seconds.
    telemetry_rate, wake_rate : BucketSpec
        Token-bucket budgets per endpoint class.
    shutdown_grace : float
        Seconds in-flight polls get to finish on shutdown.
    """

    refresh_token: str
    client_id: str = CLIENT_ID
    scope: str = SCOPE
    auth_url: str = AUTH_URL
    api_base_url: str = API_BASE_URL
    vehicle_ids: tuple[str, ...] = ()
    geofences: tuple[Geofence, ...] = ()
    online_poll_interval: float = 60.0
    waking_poll_interval: float = 15.0
    asleep_poll_interval: float = 60.0
    presence_check_cycles: int = 15
    idle_full_fetch_cycles: int = 10
    wake_policy: WakePolicy = WakePolicy.NEVER
    wake_interval: float = 6 * 3600.0
    wake_timeout_cycles: int = 8
    failure_threshold: int = 3
    retry_base: float = 5.0
    backoff_base: float = 60.0
    backoff_max: float = 1800.0
    stale_after: float = 900.0
    stale_mode: StaleMode = StaleMode.FLAG
    token_safety_margin: float = 30.0
    telemetry_rate: BucketSpec = dataclasses.field(default_factory=_default_telemetry_rate)
    wake_rate: BucketSpec = dataclasses.field(default_factory=_default_wake_rate)
    discovery_interval: float = 3600.0
    request_timeout: float = 10.0
    listen_host: str = "0.0.0.0"  # noqa: S104
    listen_port: int = 9101
    metrics_path: str = "/metrics"
    shutdown_grace: float = 10.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.refresh_token or not self.refresh_token.strip():
            raise ConfigError("refresh_token is required")
        positive = (
            "online_poll_interval",
            "waking_poll_interval",
            "asleep_poll_interval",
            "retry_base",
            "backoff_base",
            "backoff_max",
            "stale_after",
            "discovery_interval",
            "request_timeout",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0, got {getattr(self, name)}")
        for name in ("presence_check_cycles", "wake_timeout_cycles", "failure_threshold"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.idle_full_fetch_cycles < 0:
            raise ConfigError(f"idle_full_fetch_cycles must be >= 0, got {self.idle_full_fetch_cycles}")
        if self.backoff_max < self.backoff_base:
            raise ConfigError("backoff_max must be >= backoff_base")
        if self.token_safety_margin < 0 or self.shutdown_grace < 0:
            raise ConfigError("token_safety_margin and shutdown_grace must be >= 0")
        if not self.metrics_path.startswith("/"):
            raise ConfigError(f"metrics_path must start with '/', got {self.metrics_path!r}")
        level = self.log_level.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ConfigError(f"unknown log_level {self.log_level!r}")
        object.__setattr__(self, "log_level", level)

    def rate_limits(self) -> dict[EndpointClass, BucketSpec]:
        return {EndpointClass.TELEMETRY: self.telemetry_rate, EndpointClass.WAKE: self.wake_rate}

    @classmethod
    def from_env(cls, **overrides: Any) -> ExporterConfig:
        """Create configuration from ``TESLA_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "TESLA_REFRESH_TOKEN": "refresh_token",
            "TESLA_CLIENT_ID": "client_id",
            "TESLA_SCOPE": "scope",
            "TESLA_AUTH_URL": "auth_url",
            "TESLA_API_BASE_URL": "api_base_url",
            "TESLA_LISTEN_HOST": "listen_host",
            "TESLA_METRICS_PATH": "metrics_path",
            "TESLA_LOG_LEVEL": "log_level",
        }
        _ENV_FLOAT_MAP = {
            "TESLA_ONLINE_POLL_INTERVAL": "online_poll_interval",
            "TESLA_WAKING_POLL_INTERVAL": "waking_poll_interval",
            "TESLA_ASLEEP_POLL_INTERVAL": "asleep_poll_interval",
            "TESLA_WAKE_INTERVAL": "wake_interval",
            "TESLA_RETRY_BASE": "retry_base",
            "TESLA_BACKOFF_BASE": "backoff_base",
            "TESLA_BACKOFF_MAX": "backoff_max",
            "TESLA_STALE_AFTER": "stale_after",
            "TESLA_TOKEN_SAFETY_MARGIN": "token_safety_margin",
            "TESLA_DISCOVERY_INTERVAL": "discovery_interval",
            "TESLA_REQUEST_TIMEOUT": "request_timeout",
            "TESLA_SHUTDOWN_GRACE": "shutdown_grace",
        }
        _ENV_INT_MAP = {
            "TESLA_PRESENCE_CHECK_CYCLES": "presence_check_cycles",
            "TESLA_IDLE_FULL_FETCH_CYCLES": "idle_full_fetch_cycles",
            "TESLA_WAKE_TIMEOUT_CYCLES": "wake_timeout_cycles",
            "TESLA_FAILURE_THRESHOLD": "failure_threshold",
            "TESLA_LISTEN_PORT": "listen_port",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val
        try:
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    config_kwargs[field_name] = float(val)
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None:
                    config_kwargs[field_name] = int(val)
        except ValueError as exc:
            raise ConfigError(f"invalid numeric environment value: {exc}") from exc

        ids = env.get("TESLA_VEHICLE_IDS")
        if ids is not None:
            config_kwargs["vehicle_ids"] = _split_ids(ids)

        wake_policy = env.get("TESLA_WAKE_POLICY")
        if wake_policy is not None:
            config_kwargs["wake_policy"] = _enum_value(WakePolicy, wake_policy, "TESLA_WAKE_POLICY")
        stale_mode = env.get("TESLA_STALE_MODE")
        if stale_mode is not None:
            config_kwargs["stale_mode"] = _enum_value(StaleMode, stale_mode, "TESLA_STALE_MODE")

        telemetry_rate = env.get("TESLA_TELEMETRY_RATE")
        if telemetry_rate is not None:
            config_kwargs["telemetry_rate"] = _parse_bucket(telemetry_rate, "TESLA_TELEMETRY_RATE")
        wake_rate = env.get("TESLA_WAKE_RATE")
        if wake_rate is not None:
            config_kwargs["wake_rate"] = _parse_bucket(wake_rate, "TESLA_WAKE_RATE")

        # Single geofence from TESLA_LOCATION, TESLA_LATITUDE and TESLA_LONGITUDE
        location = env.get("TESLA_LOCATION")
        if location is not None and "geofences" not in overrides:
            try:
                config_kwargs["geofences"] = (
                    Geofence(
                        location=location,
                        latitude=float(env.get("TESLA_LATITUDE", "0")),
                        longitude=float(env.get("TESLA_LONGITUDE", "0")),
                        radius_meters=float(env.get("TESLA_GEOFENCE_RADIUS_METERS", "100")),
                    ),
                )
            except ValueError as exc:
                raise ConfigError(f"invalid geofence environment value: {exc}") from exc

        config_kwargs.update(overrides)
        if "refresh_token" not in config_kwargs:
            raise ConfigError("TESLA_REFRESH_TOKEN is not set")
        return cls(**config_kwargs)

    @classmethod
    def from_file(cls, path: str | Path, **overrides: Any) -> ExporterConfig:
        """Load configuration from a YAML file.

        Keys may be camelCase (``refreshToken``, ``vehicleIds``,
        ``geofenceRadiusMeters``) or snake_case. A top-level
        ``location``/``latitude``/``longitude``/``geofenceRadiusMeters``
        block defines a single geofence.
        """
        try:
            with open(path, encoding="utf-8") as fh:
                loaded = yaml.safe_load(fh)
        except FileNotFoundError as exc:
            raise ConfigError(f"configuration file not found: {path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {path}: {exc}") from exc

        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{path} must contain a mapping at the top level")

        raw = {to_snake(str(key)): value for key, value in loaded.items()}
        field_names = {f.name for f in dataclasses.fields(cls)}
        config_kwargs: dict[str, Any] = {}

        geofences = [_geofence_from_mapping(item) for item in raw.pop("geofences", None) or []]
        if "location" in raw and "latitude" in raw and "longitude" in raw:
            geofences.insert(
                0,
                _geofence_from_mapping(
                    {
                        "location": raw.pop("location"),
                        "latitude": raw.pop("latitude"),
                        "longitude": raw.pop("longitude"),
                        "geofence_radius_meters": raw.pop("geofence_radius_meters", 100.0),
                    }
                ),
            )
        if geofences:
            config_kwargs["geofences"] = tuple(geofences)

        ids = raw.pop("vehicle_ids", None)
        if ids is not None:
            config_kwargs["vehicle_ids"] = _split_ids(ids) if isinstance(ids, str) else tuple(str(i) for i in ids)

        for name in ("telemetry_rate", "wake_rate"):
            spec = raw.pop(name, None)
            if isinstance(spec, dict):
                try:
                    config_kwargs[name] = BucketSpec(**{to_snake(str(k)): v for k, v in spec.items()})
                except (TypeError, ValueError) as exc:
                    raise ConfigError(f"invalid {name}: {exc}") from exc
            elif isinstance(spec, str):
                config_kwargs[name] = _parse_bucket(spec, name)

        if "wake_policy" in raw:
            config_kwargs["wake_policy"] = _enum_value(WakePolicy, raw.pop("wake_policy"), "wakePolicy")
        if "stale_mode" in raw:
            config_kwargs["stale_mode"] = _enum_value(StaleMode, raw.pop("stale_mode"), "staleMode")

        for key, value in raw.items():
            if key in field_names:
                config_kwargs[key] = value

        config_kwargs.update(overrides)
        try:
            return cls(**config_kwargs)
        except TypeError as exc:
            raise ConfigError(f"invalid configuration in {path}: {exc}") from exc


def _enum_value(enum_cls: type[StrEnum], value: Any, name: str) -> Any:
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigError(f"{name} must be one of {allowed}, got {value!r}") from exc


def _geofence_from_mapping(item: Any) -> Geofence:
    if not isinstance(item, dict):
        raise ConfigError(f"geofence entries must be mappings, got {item!r}")
    data = {to_snake(str(k)): v for k, v in item.items()}
    radius = data.get("geofence_radius_meters", data.get("radius_meters", 100.0))
    try:
        return Geofence(
            location=str(data["location"]),
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            radius_meters=float(radius),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigError(f"invalid geofence {item!r}: {exc}") from exc
