from __future__ import annotations

import pytest
from fakes import HOME, VEHICLE_ID, Engine, FakeClock, FakeVehicleApi, build_engine

from jarvis_tesla_exporter.config import ExporterConfig


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def api() -> FakeVehicleApi:
    return FakeVehicleApi()


@pytest.fixture
def config() -> ExporterConfig:
    return ExporterConfig(refresh_token="refresh-0", vehicle_ids=(VEHICLE_ID,), geofences=(HOME,))


@pytest.fixture
def engine(api: FakeVehicleApi, clock: FakeClock, config: ExporterConfig) -> Engine:
    return build_engine(api, clock, config)
