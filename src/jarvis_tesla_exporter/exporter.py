"""Prometheus exposition of the metric cache and the scrape endpoint.

Scrapes only read the cache and the device registry; they never wait on a
poll. Rendering goes through a private ``CollectorRegistry`` so the default
process collectors stay out of the output.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from jarvis_tesla_exporter.config import ExporterConfig, StaleMode
from jarvis_tesla_exporter.ratelimit import RateLimiter
from jarvis_tesla_exporter.state.cache import Counter, LabeledGauge, MetricCache, MetricValue
from jarvis_tesla_exporter.state.device import Device, DeviceRegistry, LifecycleState

_logger = logging.getLogger(__name__)

VEHICLE_LABELS = ["vehicle_id", "vin", "display_name"]


def _vehicle_labels(device: Device) -> list[str]:
    return [device.id, device.vin, device.display_name]


class TeslaCollector:
    """Custom collector that serves cached vehicle snapshots."""

    def __init__(
        self,
        cache: MetricCache,
        registry: DeviceRegistry,
        config: ExporterConfig,
        *,
        limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self._registry = registry
        self._config = config
        self._limiter = limiter
        self._clock = clock

    def collect(self) -> Iterator[Metric]:
        now = self._clock()
        devices = self._registry.all()

        yield from self._collect_process(devices)
        yield from self._collect_devices(devices, now)
        yield from self._collect_snapshots(devices, now)

        render_ok = GaugeMetricFamily("tesla_exporter_render_ok", "1 when the last scrape rendered completely.")
        render_ok.add_metric([], 1.0)
        yield render_ok

    def _collect_process(self, devices: list[Device]) -> Iterator[Metric]:
        auth_ok = GaugeMetricFamily("tesla_exporter_auth_ok", "0 while polling is halted by a rejected refresh token.")
        auth_ok.add_metric([], 0.0 if self._registry.account_error else 1.0)
        yield auth_ok

        vehicles = GaugeMetricFamily("tesla_exporter_vehicles", "Number of tracked vehicles.")
        vehicles.add_metric([], float(len(devices)))
        yield vehicles

        if self._limiter is not None:
            tokens = GaugeMetricFamily(
                "tesla_exporter_rate_limit_tokens",
                "Whole request tokens currently available per endpoint class.",
                labels=["endpoint_class"],
            )
            for endpoint_class in self._limiter.endpoint_classes:
                tokens.add_metric([str(endpoint_class)], self._limiter.available(endpoint_class))
            yield tokens

    def _collect_devices(self, devices: list[Device], now: float) -> Iterator[Metric]:
        present = GaugeMetricFamily(
            "tesla_snapshot_present", "1 when a telemetry snapshot is cached.", labels=VEHICLE_LABELS
        )
        stale = GaugeMetricFamily("tesla_snapshot_stale", "1 when the cached snapshot is stale.", labels=VEHICLE_LABELS)
        age = GaugeMetricFamily(
            "tesla_snapshot_age_seconds", "Age of the cached snapshot.", labels=VEHICLE_LABELS
        )
        state = GaugeMetricFamily(
            "tesla_vehicle_state", "Lifecycle state of the vehicle poller.", labels=[*VEHICLE_LABELS, "state"]
        )
        availability = GaugeMetricFamily(
            "tesla_availability",
            "Upstream availability: 1 online, 0 asleep, -1 offline, -2 in service.",
            labels=VEHICLE_LABELS,
        )
        failures = GaugeMetricFamily(
            "tesla_consecutive_failures", "Consecutive failed poll cycles.", labels=VEHICLE_LABELS
        )
        last_success = GaugeMetricFamily(
            "tesla_last_success_timestamp_seconds",
            "Time of the last successful poll cycle.",
            labels=VEHICLE_LABELS,
        )

        for device in devices:
            labels = _vehicle_labels(device)
            entry = self._cache.get(device.id, now)
            present.add_metric(labels, 0.0 if entry is None else 1.0)
            if entry is not None:
                stale.add_metric(labels, 1.0 if entry.stale else 0.0)
                age.add_metric(labels, entry.age)
            for lifecycle_state in LifecycleState:
                state.add_metric([*labels, str(lifecycle_state)], 1.0 if device.state == lifecycle_state else 0.0)
            if device.availability is not None:
                availability.add_metric(labels, float(device.availability))
            failures.add_metric(labels, float(device.consecutive_failures))
            if device.last_success_at is not None:
                last_success.add_metric(labels, device.last_success_at)

        yield from (present, stale, age, state, availability, failures, last_success)

    def _collect_snapshots(self, devices: list[Device], now: float) -> Iterator[Metric]:
        families: dict[str, GaugeMetricFamily | CounterMetricFamily] = {}
        for device in devices:
            entry = self._cache.get(device.id, now)
            if entry is None:
                continue
            if entry.stale and self._config.stale_mode == StaleMode.OMIT:
                continue
            labels = _vehicle_labels(device)
            for name, value in entry.snapshot.metrics.items():
                family = families.get(name)
                if family is None:
                    family = _family_for(name, value)
                    families[name] = family
                extra = [label_value for _, label_value in value.labels] if isinstance(value, LabeledGauge) else []
                family.add_metric([*labels, *extra], value.value)
        yield from families.values()


def _family_for(name: str, value: MetricValue) -> GaugeMetricFamily | CounterMetricFamily:
    if isinstance(value, Counter):
        return CounterMetricFamily(name, value.help, labels=VEHICLE_LABELS)
    if isinstance(value, LabeledGauge):
        return GaugeMetricFamily(name, value.help, labels=[*VEHICLE_LABELS, *(key for key, _ in value.labels)])
    return GaugeMetricFamily(name, value.help, labels=VEHICLE_LABELS)


class _RenderFailedCollector:
    def collect(self) -> Iterator[Metric]:
        render_ok = GaugeMetricFamily("tesla_exporter_render_ok", "1 when the last scrape rendered completely.")
        render_ok.add_metric([], 0.0)
        yield render_ok


class Exporter:
    """Renders the cache in the Prometheus text format and serves it over HTTP."""

    def __init__(
        self,
        cache: MetricCache,
        registry: DeviceRegistry,
        config: ExporterConfig,
        *,
        limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._registry = registry
        self._metrics = CollectorRegistry(auto_describe=False)
        self._metrics.register(TeslaCollector(cache, registry, config, limiter=limiter, clock=clock))
        self._fallback = CollectorRegistry(auto_describe=False)
        self._fallback.register(_RenderFailedCollector())

    def render(self) -> bytes:
        """Render every series. Never raises; a failure is reported in-band."""
        try:
            return generate_latest(self._metrics)
        except Exception:
            _logger.exception("Failed to render metrics")
            return generate_latest(self._fallback)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        return web.Response(body=self.render(), headers={"Content-Type": CONTENT_TYPE_LATEST})

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "auth_ok": self._registry.account_error is None,
                "vehicles": len(self._registry),
            }
        )

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self._config.metrics_path, self._handle_metrics)
        app.router.add_get("/healthz", self._handle_health)
        return app

    async def start_server(self) -> web.AppRunner:
        """Start serving on ``listen_host:listen_port``; the caller cleans up the runner."""
        runner = web.AppRunner(self.create_app())
        await runner.setup()
        site = web.TCPSite(runner, self._config.listen_host, self._config.listen_port)
        await site.start()
        _logger.info(
            "Serving metrics on http://%s:%d%s",
            self._config.listen_host,
            self._config.listen_port,
            self._config.metrics_path,
        )
        return runner
