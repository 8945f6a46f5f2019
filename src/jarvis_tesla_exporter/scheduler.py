"""Per-device polling tasks, discovery and shutdown."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from jarvis_tesla_exporter.config import ExporterConfig
from jarvis_tesla_exporter.credentials import CredentialManager
from jarvis_tesla_exporter.exceptions import (
    AuthError,
    DecodeError,
    RateLimitExceeded,
    TransientAuthError,
    TransientNetworkError,
)
from jarvis_tesla_exporter.poller import PollResult, VehiclePoller
from jarvis_tesla_exporter.state.policy import next_delay, retry_delay

_logger = logging.getLogger(__name__)


class Scheduler:
    """Runs one asyncio task per device.

    Each task awaits its poll before sleeping for the policy's delay, so two
    polls of the same device never overlap. All waits end early when the
    stop event is set. An unexpected exception from a poll is logged and
    counted as a failure of that device; its task keeps running.

    A rejected refresh token halts polling for the whole account: the reason
    is recorded on the registry and every task exits. :meth:`resume` restarts
    polling with a new refresh token.
    """

    def __init__(
        self,
        poller: VehiclePoller,
        credentials: CredentialManager,
        config: ExporterConfig,
        *,
        stop_event: asyncio.Event | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._poller = poller
        self._credentials = credentials
        self._config = config
        self._stop = stop_event if stop_event is not None else asyncio.Event()
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._discovery_task: asyncio.Task[None] | None = None

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop

    @property
    def halted(self) -> bool:
        return self._poller.registry.account_error is not None

    @property
    def tasks(self) -> dict[str, asyncio.Task[None]]:
        return dict(self._tasks)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Register devices and start their polling tasks."""
        if self._config.vehicle_ids:
            self._poller.register_static(self._config.vehicle_ids)
            self._spawn_missing()
        else:
            self._start_discovery()

    async def run(self) -> None:
        """Poll until the stop event is set, then shut down."""
        await self.start()
        await self._stop.wait()
        await self.shutdown()

    async def shutdown(self) -> None:
        """Stop all tasks, giving in-flight polls ``shutdown_grace`` seconds."""
        self._stop.set()
        tasks = list(self._tasks.values())
        if self._discovery_task is not None:
            tasks.append(self._discovery_task)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=self._config.shutdown_grace)
        for task in pending:
            _logger.warning("Cancelling %s after %.0fs shutdown grace", task.get_name(), self._config.shutdown_grace)
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._discovery_task = None
        _logger.info("Scheduler stopped")

    async def resume(self, refresh_token: str) -> None:
        """Install a new refresh token and restart polling after an auth halt."""
        self._credentials.reconfigure(refresh_token)
        self._poller.registry.account_error = None
        _logger.info("Refresh token reconfigured, resuming polling")
        if self._config.vehicle_ids:
            self._poller.register_static(self._config.vehicle_ids)
        # Devices already discovered restart now; discovery may be mid-sleep
        self._spawn_missing()
        if not self._config.vehicle_ids and (self._discovery_task is None or self._discovery_task.done()):
            self._start_discovery()

    async def poll_all_once(self) -> list[PollResult]:
        """Register devices and run a single poll cycle for each of them."""
        if self._config.vehicle_ids:
            devices = self._poller.register_static(self._config.vehicle_ids)
        else:
            devices = await self._poller.discover()
        return list(await asyncio.gather(*(self._poller.poll_once(device.id) for device in devices)))

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _start_discovery(self) -> None:
        self._discovery_task = asyncio.get_running_loop().create_task(self._discovery_loop(), name="tesla-discovery")

    def _spawn_missing(self) -> None:
        loop = asyncio.get_running_loop()
        for device in self._poller.registry.all():
            task = self._tasks.get(device.id)
            if task is not None and not task.done():
                continue
            self._tasks[device.id] = loop.create_task(self._device_loop(device.id), name=f"tesla-poll-{device.id}")

    def _halt(self, exc: AuthError) -> None:
        if self._poller.registry.account_error is None:
            _logger.error("Polling halted for the account: %s", exc)
        self._poller.registry.account_error = str(exc)

    async def _sleep(self, delay: float) -> bool:
        """Sleep up to *delay* seconds; return ``True`` if the stop event fired."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=max(delay, 0.0))
        except TimeoutError:
            return False
        return True

    async def _device_loop(self, device_id: str) -> None:
        device = self._poller.registry.get(device_id)
        if device is None:
            return
        while not self._stop.is_set() and not self.halted:
            try:
                await self._poller.poll_once(device_id)
            except AuthError as exc:
                self._halt(exc)
                return
            except Exception as exc:
                _logger.exception("Unexpected error polling vehicle %s", device_id)
                self._poller.record_failure(device, exc)
            delay = next_delay(device, self._clock(), self._config)
            _logger.debug("Next poll of vehicle %s in %.1fs", device_id, delay)
            if await self._sleep(delay):
                return

    async def _discovery_loop(self) -> None:
        attempt = 0
        while not self._stop.is_set() and not self.halted:
            try:
                await self._poller.discover()
            except AuthError as exc:
                self._halt(exc)
                return
            except RateLimitExceeded as exc:
                delay = exc.retry_after
                _logger.info("Vehicle discovery deferred for %.0fs", delay)
            except (TransientNetworkError, TransientAuthError, DecodeError) as exc:
                attempt += 1
                delay = retry_delay(attempt, self._config)
                _logger.warning("Vehicle discovery failed, retrying in %.0fs: %s", delay, exc)
            except Exception:
                attempt += 1
                delay = retry_delay(attempt, self._config)
                _logger.exception("Unexpected error during vehicle discovery, retrying in %.0fs", delay)
            else:
                attempt = 0
                delay = self._config.discovery_interval
                self._spawn_missing()
            if await self._sleep(delay):
                return
