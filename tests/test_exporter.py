from __future__ import annotations

import dataclasses
import logging

import pytest
from aiohttp.test_utils import TestClient, TestServer
from fakes import VEHICLE_ID, VIN, Engine, FakeClock, FakeVehicleApi, build_engine
from prometheus_client.parser import text_string_to_metric_families

from jarvis_tesla_exporter.config import ExporterConfig, StaleMode
from jarvis_tesla_exporter.exporter import Exporter

LABELS = {"vehicle_id": VEHICLE_ID, "vin": VIN, "display_name": "Jarvis"}


def _exporter(engine: Engine) -> Exporter:
    return Exporter(engine.cache, engine.registry, engine.config, limiter=engine.limiter, clock=engine.clock)


def _samples(text: str) -> list[tuple[str, dict[str, str], float]]:
    return [
        (sample.name, dict(sample.labels), sample.value)
        for family in text_string_to_metric_families(text)
        for sample in family.samples
    ]


def _value(text: str, name: str, **labels: str) -> float | None:
    for sample_name, sample_labels, value in _samples(text):
        if sample_name == name and sample_labels == labels:
            return value
    return None


def _names(text: str) -> set[str]:
    return {name for name, _, _ in _samples(text)}


async def _polled(engine: Engine) -> str:
    engine.poller.register_static((VEHICLE_ID,))
    await engine.poller.poll_once(VEHICLE_ID)
    return _exporter(engine).render().decode("utf-8")


@pytest.mark.asyncio
async def test_render_exports_snapshot_with_vehicle_labels(engine: Engine) -> None:
    text = await _polled(engine)

    assert _value(text, "tesla_battery_level_percent", **LABELS) == 80.0
    assert _value(text, "tesla_odometer_meters_total", **LABELS) == pytest.approx(1_609_344.0)
    assert _value(text, "tesla_location", **LABELS, location="Home") == 1.0
    assert _value(text, "tesla_charging_state", **LABELS, state="Charging") == 1.0
    assert _value(text, "tesla_snapshot_present", **LABELS) == 1.0
    assert _value(text, "tesla_snapshot_stale", **LABELS) == 0.0
    assert _value(text, "tesla_availability", **LABELS) == 1.0
    assert _value(text, "tesla_consecutive_failures", **LABELS) == 0.0
    assert _value(text, "tesla_exporter_auth_ok") == 1.0
    assert _value(text, "tesla_exporter_render_ok") == 1.0
    assert _value(text, "tesla_exporter_vehicles") == 1.0


@pytest.mark.asyncio
async def test_lifecycle_state_is_one_hot(engine: Engine) -> None:
    text = await _polled(engine)

    states = {
        labels["state"]: value
        for name, labels, value in _samples(text)
        if name == "tesla_vehicle_state"
    }
    assert states == {"unknown": 0.0, "asleep": 0.0, "waking": 0.0, "online": 1.0, "unreachable": 0.0}


def test_device_without_snapshot_reports_not_present(engine: Engine) -> None:
    engine.poller.register_static((VEHICLE_ID,))

    text = _exporter(engine).render().decode("utf-8")

    labels = {"vehicle_id": VEHICLE_ID, "vin": "", "display_name": "Unknown"}
    assert _value(text, "tesla_snapshot_present", **labels) == 0.0
    assert "tesla_snapshot_stale" not in _names(text)
    assert "tesla_battery_level_percent" not in _names(text)


@pytest.mark.asyncio
async def test_stale_snapshot_is_flagged(engine: Engine) -> None:
    await _polled(engine)
    engine.clock.advance(engine.config.stale_after + 1)

    text = _exporter(engine).render().decode("utf-8")

    assert _value(text, "tesla_snapshot_stale", **LABELS) == 1.0
    assert _value(text, "tesla_battery_level_percent", **LABELS) == 80.0
    assert _value(text, "tesla_snapshot_age_seconds", **LABELS) == pytest.approx(engine.config.stale_after + 1)


@pytest.mark.asyncio
async def test_stale_snapshot_is_omitted_in_omit_mode(
    api: FakeVehicleApi, clock: FakeClock, config: ExporterConfig
) -> None:
    engine = build_engine(api, clock, dataclasses.replace(config, stale_mode=StaleMode.OMIT))
    await _polled(engine)
    clock.advance(config.stale_after + 1)

    text = _exporter(engine).render().decode("utf-8")

    assert _value(text, "tesla_snapshot_stale", **LABELS) == 1.0
    assert "tesla_battery_level_percent" not in _names(text)


def test_auth_halt_is_visible(engine: Engine) -> None:
    engine.registry.account_error = "invalid_grant"

    text = _exporter(engine).render().decode("utf-8")

    assert _value(text, "tesla_exporter_auth_ok") == 0.0


def test_rate_limit_tokens_per_endpoint_class(engine: Engine) -> None:
    text = _exporter(engine).render().decode("utf-8")

    assert _value(text, "tesla_exporter_rate_limit_tokens", endpoint_class="telemetry") == 20.0
    assert _value(text, "tesla_exporter_rate_limit_tokens", endpoint_class="wake") == 1.0


def test_render_failure_is_reported_in_band(
    engine: Engine, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    engine.poller.register_static((VEHICLE_ID,))

    def broken_get(device_id: str, now: float) -> None:
        raise RuntimeError("boom")

    monkeypatch.setattr(engine.cache, "get", broken_get)

    with caplog.at_level(logging.ERROR, logger="jarvis_tesla_exporter.exporter"):
        text = _exporter(engine).render().decode("utf-8")

    assert _value(text, "tesla_exporter_render_ok") == 0.0
    assert "Failed to render metrics" in caplog.text


@pytest.mark.asyncio
async def test_scrape_endpoint_serves_metrics_and_health(engine: Engine) -> None:
    await _polled(engine)
    exporter = _exporter(engine)

    async with TestClient(TestServer(exporter.create_app())) as client:
        resp = await client.get(engine.config.metrics_path)
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/plain")
        text = await resp.text()
        assert _value(text, "tesla_battery_level_percent", **LABELS) == 80.0

        health = await client.get("/healthz")
        assert health.status == 200
        assert await health.json() == {"status": "ok", "auth_ok": True, "vehicles": 1}

        missing = await client.get("/nope")
        assert missing.status == 404
