"""One poll cycle per call: decide, talk to the upstream, record the outcome."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from jarvis_tesla_exporter.client import VehicleApi
from jarvis_tesla_exporter.config import ExporterConfig
from jarvis_tesla_exporter.credentials import CredentialManager
from jarvis_tesla_exporter.exceptions import (
    DecodeError,
    RateLimitExceeded,
    TokenRejectedError,
    TransientAuthError,
    TransientNetworkError,
    VehicleUnavailableError,
)
from jarvis_tesla_exporter.ingestion.snapshot import build_snapshot
from jarvis_tesla_exporter.models.vehicle import Vehicle
from jarvis_tesla_exporter.ratelimit import EndpointClass, RateLimiter, WouldBlockUntil
from jarvis_tesla_exporter.state.cache import MetricCache
from jarvis_tesla_exporter.state.device import Availability, Device, DeviceRegistry, LifecycleState
from jarvis_tesla_exporter.state.policy import PollAction, decide, is_active, probe_backoff, retry_delay

_logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PollResult:
    """Outcome of one :meth:`VehiclePoller.poll_once` call."""

    device_id: str
    action: PollAction
    state: LifecycleState
    published: bool = False
    deferred: bool = False
    overlapped: bool = False
    error: str | None = None


class VehiclePoller:
    """Drives the lifecycle of every device in the registry.

    This is the only writer of :class:`~jarvis_tesla_exporter.state.device.Device`
    records and of the metric cache. A device never has two polls in flight:
    a second :meth:`poll_once` for the same device while one runs returns
    immediately without touching the upstream.

    :class:`~jarvis_tesla_exporter.exceptions.AuthError` propagates to the
    caller; every other upstream error is absorbed into the device record.
    """

    def __init__(
        self,
        api: VehicleApi,
        credentials: CredentialManager,
        limiter: RateLimiter,
        cache: MetricCache,
        registry: DeviceRegistry,
        config: ExporterConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._api = api
        self._credentials = credentials
        self._limiter = limiter
        self._cache = cache
        self._registry = registry
        self._config = config
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def registry(self) -> DeviceRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def register_static(self, vehicle_ids: tuple[str, ...]) -> list[Device]:
        return [self._registry.get_or_create(vehicle_id) for vehicle_id in vehicle_ids]

    async def discover(self) -> list[Device]:
        """Fetch the account's vehicle list and register every vehicle.

        Existing records are reused; with a configured allow-list only the
        listed vehicles (by id, vehicle id or VIN) are kept.
        """
        vehicles = await self._call(EndpointClass.TELEMETRY, self._api.list_vehicles)
        allow = set(self._config.vehicle_ids)
        devices: list[Device] = []
        for vehicle in vehicles:
            if allow and not allow.intersection({vehicle.id, vehicle.vehicle_id, vehicle.vin}):
                _logger.debug("Ignoring vehicle %s: not in the configured vehicle ids", vehicle.id)
                continue
            devices.append(self._registry.get_or_create(vehicle.id, vehicle=vehicle))
        _logger.info("Discovered %d vehicle(s)", len(devices))
        return devices

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    async def poll_once(self, device_id: str) -> PollResult:
        """Run one poll cycle for *device_id*.

        Raises
        ------
        KeyError
            The device is not registered.
        AuthError
            The refresh token was rejected; the account must be reconfigured.
        """
        device = self._registry.get(device_id)
        if device is None:
            raise KeyError(device_id)
        lock = self._locks.setdefault(device_id, asyncio.Lock())
        if lock.locked():
            _logger.debug("Poll for vehicle %s already in flight, skipping", device_id)
            return PollResult(device_id, PollAction.SKIP, device.state, overlapped=True)

        async with lock:
            device.in_flight = True
            try:
                return await self._poll(device)
            finally:
                device.in_flight = False

    async def _poll(self, device: Device) -> PollResult:
        now = self._clock()
        device.retry_at = None
        action = decide(device, now, self._config)
        _logger.debug("Vehicle %s in state %s: %s", device.id, device.state, action)

        if action == PollAction.SKIP:
            if device.state == LifecycleState.ASLEEP:
                device.asleep_cycles += 1
            return PollResult(device.id, action, device.state)

        published = False
        try:
            if action == PollAction.PROBE:
                _logger.info("Probing unreachable vehicle %s (attempt %d)", device.id, device.unreachable_attempts)
                device.next_probe_at = None
                device.transition(LifecycleState.UNKNOWN)
                published = await self._check_presence(device)
            elif action == PollAction.PRESENCE_CHECK:
                published = await self._check_presence(device)
            elif action == PollAction.WAKE:
                await self._wake(device)
            elif action == PollAction.IDLE_CHECK:
                published = await self._check_idle(device)
            else:
                published = await self._fetch_telemetry(device)
        except RateLimitExceeded as exc:
            device.retry_at = self._clock() + exc.retry_after
            _logger.info("Vehicle %s deferred for %.1fs: %s", device.id, exc.retry_after, exc)
            return PollResult(device.id, action, device.state, deferred=True, error=str(exc))
        except (TransientNetworkError, TransientAuthError, DecodeError) as exc:
            self.record_failure(device, exc)
            return PollResult(device.id, action, device.state, error=str(exc))

        return PollResult(device.id, action, device.state, published=published)

    async def _awake_vehicle(self, device: Device) -> Vehicle | None:
        """Presence check; ``None`` once the device has been moved to Asleep."""
        try:
            vehicle = await self._call(
                EndpointClass.TELEMETRY,
                lambda token: self._api.get_vehicle(token, device.id),
            )
        except VehicleUnavailableError:
            device.availability = Availability.ASLEEP
            self._enter_asleep(device)
            self._record_success(device)
            return None

        device.update_identity(vehicle)
        self._record_success(device)
        if not vehicle.is_awake:
            self._enter_asleep(device)
            return None
        return vehicle

    async def _check_presence(self, device: Device) -> bool:
        if await self._awake_vehicle(device) is None:
            return False
        device.transition(LifecycleState.ONLINE)
        return await self._fetch_telemetry(device)

    async def _check_idle(self, device: Device) -> bool:
        """Confirm an idle vehicle is still awake without reading its telemetry."""
        if await self._awake_vehicle(device) is None:
            return False
        device.idle_cycles += 1
        _logger.debug("Vehicle %s idle for %d cycle(s)", device.id, device.idle_cycles)
        return self._cache.touch(device.id, self._clock())

    async def _wake(self, device: Device) -> None:
        vehicle: Vehicle = await self._call(
            EndpointClass.WAKE,
            lambda token: self._api.wake_up(token, device.id),
        )
        device.last_wake_at = self._clock()
        device.update_identity(vehicle)
        device.transition(LifecycleState.WAKING)
        self._record_success(device)

    async def _fetch_telemetry(self, device: Device) -> bool:
        try:
            data = await self._call(
                EndpointClass.TELEMETRY,
                lambda token: self._api.get_vehicle_data(token, device.id),
            )
        except VehicleUnavailableError:
            device.availability = Availability.ASLEEP
            if device.state == LifecycleState.WAKING:
                device.waking_cycles += 1
                if device.waking_cycles >= self._config.wake_timeout_cycles:
                    _logger.warning(
                        "Vehicle %s did not wake after %d cycles", device.id, device.waking_cycles
                    )
                    self._enter_asleep(device)
            else:
                self._enter_asleep(device)
            self._record_success(device)
            return False

        snapshot = build_snapshot(
            device.id,
            data,
            geofences=self._config.geofences,
            captured_at=self._clock(),
        )
        self._cache.publish(snapshot)

        odometer = data.vehicle_state.odometer if data.vehicle_state is not None else None
        device.active = is_active(data, device.last_odometer)
        device.idle_cycles = 0
        if odometer is not None:
            device.last_odometer = odometer

        if data.vin:
            device.vin = data.vin
        if data.display_name:
            device.display_name = data.display_name
        device.availability = Availability.IN_SERVICE if data.in_service else Availability.ONLINE
        device.transition(LifecycleState.ONLINE)
        self._record_success(device)
        return True

    # ------------------------------------------------------------------
    # Upstream calls
    # ------------------------------------------------------------------

    def _acquire(self, endpoint_class: EndpointClass) -> None:
        grant = self._limiter.acquire(endpoint_class)
        if isinstance(grant, WouldBlockUntil):
            raise RateLimitExceeded(
                f"{endpoint_class} budget exhausted",
                retry_after=grant.instant - self._clock(),
                endpoint_class=str(endpoint_class),
            )

    async def _call(self, endpoint_class: EndpointClass, request: Callable[[str], Awaitable[T]]) -> T:
        """Rate-limit and authenticate *request*, retrying once after a 401."""
        self._acquire(endpoint_class)
        credential = await self._credentials.get_valid_token()
        try:
            return await request(credential.access_token)
        except TokenRejectedError:
            _logger.warning("Access token rejected, refreshing and retrying once")
            self._credentials.invalidate()

        self._acquire(endpoint_class)
        credential = await self._credentials.get_valid_token()
        return await request(credential.access_token)

    # ------------------------------------------------------------------
    # Outcome bookkeeping
    # ------------------------------------------------------------------

    def _enter_asleep(self, device: Device) -> None:
        device.transition(LifecycleState.ASLEEP)
        device.asleep_cycles = 0

    def _record_success(self, device: Device) -> None:
        device.consecutive_failures = 0
        device.unreachable_attempts = 0
        device.next_probe_at = None
        device.last_success_at = self._clock()

    def record_failure(self, device: Device, exc: Exception) -> None:
        """Count a failed poll cycle, moving the device to Unreachable at the threshold."""
        device.consecutive_failures += 1
        now = self._clock()
        if device.consecutive_failures < self._config.failure_threshold:
            delay = retry_delay(device.consecutive_failures, self._config)
            device.retry_at = now + delay
            _logger.warning(
                "Poll of vehicle %s failed (%d/%d), retrying in %.0fs: %s",
                device.id,
                device.consecutive_failures,
                self._config.failure_threshold,
                delay,
                exc,
            )
            return

        device.unreachable_attempts += 1
        backoff = probe_backoff(device.unreachable_attempts, self._config)
        device.next_probe_at = now + backoff
        device.transition(LifecycleState.UNREACHABLE)
        self._cache.mark_stale(device.id)
        _logger.warning(
            "Vehicle %s unreachable after %d failures, next probe in %.0fs: %s",
            device.id,
            device.consecutive_failures,
            backoff,
            exc,
        )
