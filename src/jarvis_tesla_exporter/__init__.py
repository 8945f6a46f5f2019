"""jarvis-tesla-exporter - Prometheus exporter for Tesla vehicle telemetry."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("jarvis-tesla-exporter")
except PackageNotFoundError:
    __version__ = "0+local"

from jarvis_tesla_exporter.client import TeslaClient, VehicleApi
from jarvis_tesla_exporter.config import ExporterConfig, Geofence, StaleMode, WakePolicy
from jarvis_tesla_exporter.credentials import Credential, CredentialManager
from jarvis_tesla_exporter.exceptions import (
    AuthError,
    ConfigError,
    DecodeError,
    RateLimitExceeded,
    TeslaExporterError,
    TokenRejectedError,
    TransientAuthError,
    TransientNetworkError,
    VehicleUnavailableError,
)
from jarvis_tesla_exporter.exporter import Exporter
from jarvis_tesla_exporter.models import Vehicle, VehicleData
from jarvis_tesla_exporter.poller import PollResult, VehiclePoller
from jarvis_tesla_exporter.ratelimit import BucketSpec, EndpointClass, Permit, RateLimiter, WouldBlockUntil
from jarvis_tesla_exporter.scheduler import Scheduler
from jarvis_tesla_exporter.state.cache import MetricCache, MetricSnapshot
from jarvis_tesla_exporter.state.device import Device, DeviceRegistry, LifecycleState

__all__ = [
    "__version__",
    "AuthError",
    "BucketSpec",
    "ConfigError",
    "Credential",
    "CredentialManager",
    "DecodeError",
    "Device",
    "DeviceRegistry",
    "EndpointClass",
    "Exporter",
    "ExporterConfig",
    "Geofence",
    "LifecycleState",
    "MetricCache",
    "MetricSnapshot",
    "Permit",
    "PollResult",
    "RateLimitExceeded",
    "RateLimiter",
    "Scheduler",
    "StaleMode",
    "TeslaClient",
    "TeslaExporterError",
    "TokenRejectedError",
    "TransientAuthError",
    "TransientNetworkError",
    "Vehicle",
    "VehicleApi",
    "VehicleData",
    "VehiclePoller",
    "VehicleUnavailableError",
    "WakePolicy",
    "WouldBlockUntil",
]
