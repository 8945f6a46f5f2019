from __future__ import annotations

import asyncio
import dataclasses

import pytest
from fakes import VEHICLE_ID, VIN, Engine, FakeClock, FakeVehicleApi, build_engine, vehicle_data_payload

from jarvis_tesla_exporter.config import ExporterConfig, WakePolicy
from jarvis_tesla_exporter.exceptions import (
    AuthError,
    DecodeError,
    RateLimitExceeded,
    TransientAuthError,
    TransientNetworkError,
)
from jarvis_tesla_exporter.ratelimit import BucketSpec
from jarvis_tesla_exporter.state.device import Availability, LifecycleState
from jarvis_tesla_exporter.state.policy import PollAction, next_delay


async def _online(engine: Engine) -> None:
    engine.poller.register_static((VEHICLE_ID,))
    result = await engine.poller.poll_once(VEHICLE_ID)
    assert result.state == LifecycleState.ONLINE


@pytest.mark.asyncio
async def test_unknown_to_online_publishes_fresh_snapshot(engine: Engine) -> None:
    engine.poller.register_static((VEHICLE_ID,))

    result = await engine.poller.poll_once(VEHICLE_ID)

    assert result.action == PollAction.PRESENCE_CHECK
    assert result.state == LifecycleState.ONLINE
    assert result.published is True
    entry = engine.cache.get(VEHICLE_ID, engine.clock())
    assert entry is not None
    assert entry.stale is False
    assert entry.age == 0.0

    device = engine.registry.get(VEHICLE_ID)
    assert device is not None
    assert device.vin == VIN
    assert device.display_name == "Jarvis"
    assert device.availability == Availability.ONLINE
    assert device.last_success_at == engine.clock()
    assert device.in_flight is False
    assert engine.api.calls == {"refresh_token": 1, "get_vehicle": 1, "get_vehicle_data": 1}


@pytest.mark.asyncio
async def test_unknown_to_asleep_does_not_fetch_telemetry(engine: Engine) -> None:
    engine.api.states[VEHICLE_ID] = "asleep"
    engine.poller.register_static((VEHICLE_ID,))

    result = await engine.poller.poll_once(VEHICLE_ID)

    assert result.state == LifecycleState.ASLEEP
    assert result.published is False
    assert "get_vehicle_data" not in engine.api.calls
    assert engine.registry.get(VEHICLE_ID).availability == Availability.ASLEEP
    assert engine.cache.get(VEHICLE_ID, engine.clock()) is None


@pytest.mark.asyncio
async def test_in_service_vehicle_is_treated_as_asleep(engine: Engine) -> None:
    engine.api.in_service.add(VEHICLE_ID)
    engine.poller.register_static((VEHICLE_ID,))

    result = await engine.poller.poll_once(VEHICLE_ID)

    assert result.state == LifecycleState.ASLEEP
    assert engine.registry.get(VEHICLE_ID).availability == Availability.IN_SERVICE


@pytest.mark.asyncio
async def test_three_failures_mark_unreachable_and_stale(engine: Engine) -> None:
    await _online(engine)
    engine.api.errors["get_vehicle_data"] = [TransientNetworkError("HTTP 503", status_code=503) for _ in range(3)]
    device = engine.registry.get(VEHICLE_ID)

    first = await engine.poller.poll_once(VEHICLE_ID)
    assert first.error is not None
    assert device.state == LifecycleState.ONLINE
    assert device.consecutive_failures == 1
    assert device.retry_at == pytest.approx(engine.clock() + 5.0)
    assert next_delay(device, engine.clock(), engine.config) == pytest.approx(5.0)

    engine.clock.advance(5.0)
    await engine.poller.poll_once(VEHICLE_ID)
    engine.clock.advance(10.0)
    await engine.poller.poll_once(VEHICLE_ID)

    assert device.state == LifecycleState.UNREACHABLE
    assert device.consecutive_failures == 3
    assert device.unreachable_attempts == 1
    assert device.next_probe_at == pytest.approx(engine.clock() + 60.0)
    entry = engine.cache.get(VEHICLE_ID, engine.clock())
    assert entry is not None
    assert entry.stale is True


@pytest.mark.asyncio
async def test_unreachable_probe_recovers_after_cooldown(engine: Engine) -> None:
    await _online(engine)
    engine.api.errors["get_vehicle_data"] = [DecodeError("garbage") for _ in range(3)]
    for _ in range(3):
        await engine.poller.poll_once(VEHICLE_ID)
    device = engine.registry.get(VEHICLE_ID)
    assert device.state == LifecycleState.UNREACHABLE

    skipped = await engine.poller.poll_once(VEHICLE_ID)
    assert skipped.action == PollAction.SKIP

    engine.clock.advance(60.0)
    probed = await engine.poller.poll_once(VEHICLE_ID)

    assert probed.action == PollAction.PROBE
    assert probed.state == LifecycleState.ONLINE
    assert probed.published is True
    assert device.consecutive_failures == 0
    assert device.unreachable_attempts == 0
    assert engine.cache.get(VEHICLE_ID, engine.clock()).stale is False


@pytest.mark.asyncio
async def test_failed_probe_backs_off_exponentially(engine: Engine) -> None:
    await _online(engine)
    engine.api.errors["get_vehicle_data"] = [TransientNetworkError("timeout") for _ in range(3)]
    for _ in range(3):
        await engine.poller.poll_once(VEHICLE_ID)

    engine.clock.advance(60.0)
    engine.api.errors["get_vehicle"] = [TransientNetworkError("timeout")]
    await engine.poller.poll_once(VEHICLE_ID)

    device = engine.registry.get(VEHICLE_ID)
    assert device.state == LifecycleState.UNREACHABLE
    assert device.unreachable_attempts == 2
    assert device.next_probe_at == pytest.approx(engine.clock() + 120.0)


@pytest.mark.asyncio
async def test_vehicle_unavailable_means_asleep_not_failure(engine: Engine) -> None:
    await _online(engine)
    engine.api.states[VEHICLE_ID] = "asleep"

    result = await engine.poller.poll_once(VEHICLE_ID)

    device = engine.registry.get(VEHICLE_ID)
    assert result.state == LifecycleState.ASLEEP
    assert device.consecutive_failures == 0
    entry = engine.cache.get(VEHICLE_ID, engine.clock())
    assert entry is not None
    assert entry.stale is False


@pytest.mark.asyncio
async def test_waking_times_out_back_to_asleep(api: FakeVehicleApi, clock: FakeClock, config: ExporterConfig) -> None:
    api.states[VEHICLE_ID] = "asleep"
    config = dataclasses.replace(config, wake_policy=WakePolicy.SCHEDULED, wake_timeout_cycles=2)
    engine = build_engine(api, clock, config)
    engine.poller.register_static((VEHICLE_ID,))

    assert (await engine.poller.poll_once(VEHICLE_ID)).state == LifecycleState.ASLEEP

    woken = await engine.poller.poll_once(VEHICLE_ID)
    assert woken.action == PollAction.WAKE
    assert woken.state == LifecycleState.WAKING
    assert api.calls["wake_up"] == 1

    still_waking = await engine.poller.poll_once(VEHICLE_ID)
    assert still_waking.state == LifecycleState.WAKING
    gave_up = await engine.poller.poll_once(VEHICLE_ID)
    assert gave_up.state == LifecycleState.ASLEEP
    assert engine.registry.get(VEHICLE_ID).consecutive_failures == 0

    # The wake interval has not elapsed, so no second wake
    assert (await engine.poller.poll_once(VEHICLE_ID)).action == PollAction.SKIP
    assert api.calls["wake_up"] == 1


@pytest.mark.asyncio
async def test_wake_then_online(api: FakeVehicleApi, clock: FakeClock, config: ExporterConfig) -> None:
    api.states[VEHICLE_ID] = "asleep"
    api.wake_brings_online = True
    engine = build_engine(api, clock, dataclasses.replace(config, wake_policy=WakePolicy.SCHEDULED))
    engine.poller.register_static((VEHICLE_ID,))

    await engine.poller.poll_once(VEHICLE_ID)
    await engine.poller.poll_once(VEHICLE_ID)
    result = await engine.poller.poll_once(VEHICLE_ID)

    assert result.state == LifecycleState.ONLINE
    assert result.published is True
    assert engine.registry.get(VEHICLE_ID).last_wake_at == clock()


@pytest.mark.asyncio
async def test_never_policy_never_sends_wake(engine: Engine) -> None:
    engine.api.states[VEHICLE_ID] = "asleep"
    engine.poller.register_static((VEHICLE_ID,))

    for _ in range(500):
        await engine.poller.poll_once(VEHICLE_ID)
        engine.clock.advance(engine.config.asleep_poll_interval)

    assert engine.api.calls.get("wake_up", 0) == 0
    assert engine.api.calls.get("get_vehicle_data", 0) == 0
    # Presence is still re-checked every presence_check_cycles cycles
    assert engine.api.calls["get_vehicle"] > 1
    assert engine.api.calls["get_vehicle"] < 500 // engine.config.presence_check_cycles + 2


@pytest.mark.asyncio
async def test_idle_vehicle_gets_presence_checks_between_full_fetches(engine: Engine) -> None:
    engine.api.payloads[VEHICLE_ID] = vehicle_data_payload(charger_power=0)
    await _online(engine)
    device = engine.registry.get(VEHICLE_ID)
    assert device.active is False
    assert device.last_odometer == 1000.0

    for cycle in range(1, engine.config.idle_full_fetch_cycles + 1):
        engine.clock.advance(engine.config.online_poll_interval)
        result = await engine.poller.poll_once(VEHICLE_ID)
        assert result.action == PollAction.IDLE_CHECK
        assert result.state == LifecycleState.ONLINE
        assert device.idle_cycles == cycle

    assert engine.api.calls["get_vehicle_data"] == 1
    assert engine.api.calls["get_vehicle"] == 1 + engine.config.idle_full_fetch_cycles
    entry = engine.cache.get(VEHICLE_ID, engine.clock())
    assert entry.age == 0.0
    assert entry.stale is False

    engine.clock.advance(engine.config.online_poll_interval)
    full = await engine.poller.poll_once(VEHICLE_ID)

    assert full.action == PollAction.FETCH_TELEMETRY
    assert engine.api.calls["get_vehicle_data"] == 2
    assert device.idle_cycles == 0


@pytest.mark.asyncio
async def test_idle_vehicle_is_left_to_fall_asleep(engine: Engine) -> None:
    engine.api.payloads[VEHICLE_ID] = vehicle_data_payload(latch="Disengaged")
    await _online(engine)

    engine.api.states[VEHICLE_ID] = "asleep"
    engine.clock.advance(engine.config.online_poll_interval)
    result = await engine.poller.poll_once(VEHICLE_ID)

    assert result.action == PollAction.IDLE_CHECK
    assert result.state == LifecycleState.ASLEEP
    assert result.published is False
    assert engine.api.calls["get_vehicle_data"] == 1
    assert engine.registry.get(VEHICLE_ID).availability == Availability.ASLEEP


@pytest.mark.asyncio
async def test_periodic_full_fetch_picks_up_new_activity(
    api: FakeVehicleApi, clock: FakeClock, config: ExporterConfig
) -> None:
    engine = build_engine(api, clock, dataclasses.replace(config, idle_full_fetch_cycles=1))
    api.payloads[VEHICLE_ID] = vehicle_data_payload(charger_power=0)
    await _online(engine)
    device = engine.registry.get(VEHICLE_ID)

    clock.advance(config.online_poll_interval)
    assert (await engine.poller.poll_once(VEHICLE_ID)).action == PollAction.IDLE_CHECK

    api.payloads[VEHICLE_ID] = vehicle_data_payload(charger_power=0, odometer=1012.5)
    clock.advance(config.online_poll_interval)
    assert (await engine.poller.poll_once(VEHICLE_ID)).action == PollAction.FETCH_TELEMETRY
    assert device.active is True
    assert device.last_odometer == 1012.5

    clock.advance(config.online_poll_interval)
    assert (await engine.poller.poll_once(VEHICLE_ID)).action == PollAction.FETCH_TELEMETRY
    assert device.active is False


@pytest.mark.asyncio
async def test_charging_vehicle_is_fetched_every_cycle(engine: Engine) -> None:
    await _online(engine)

    for _ in range(3):
        engine.clock.advance(engine.config.online_poll_interval)
        assert (await engine.poller.poll_once(VEHICLE_ID)).action == PollAction.FETCH_TELEMETRY

    assert engine.api.calls["get_vehicle_data"] == 4
    assert engine.registry.get(VEHICLE_ID).active is True


@pytest.mark.asyncio
async def test_local_rate_limit_defers_without_failure(
    api: FakeVehicleApi, clock: FakeClock, config: ExporterConfig
) -> None:
    engine = build_engine(api, clock, dataclasses.replace(config, telemetry_rate=BucketSpec(1, 1 / 60)))
    engine.poller.register_static((VEHICLE_ID,))

    result = await engine.poller.poll_once(VEHICLE_ID)

    device = engine.registry.get(VEHICLE_ID)
    assert result.deferred is True
    assert result.published is False
    assert device.state == LifecycleState.ONLINE
    assert device.consecutive_failures == 0
    assert device.retry_at == pytest.approx(clock() + 60.0)
    assert "get_vehicle_data" not in api.calls


@pytest.mark.asyncio
async def test_upstream_429_defers_without_failure(engine: Engine) -> None:
    await _online(engine)
    engine.api.errors["get_vehicle_data"] = [RateLimitExceeded("HTTP 429", retry_after=120.0)]

    result = await engine.poller.poll_once(VEHICLE_ID)

    device = engine.registry.get(VEHICLE_ID)
    assert result.deferred is True
    assert device.consecutive_failures == 0
    assert next_delay(device, engine.clock(), engine.config) == pytest.approx(120.0)


@pytest.mark.asyncio
async def test_rejected_access_token_is_refreshed_and_retried_once(engine: Engine) -> None:
    engine.api.rejected_tokens.add("access-1")
    engine.poller.register_static((VEHICLE_ID,))

    result = await engine.poller.poll_once(VEHICLE_ID)

    assert result.published is True
    assert engine.api.calls["refresh_token"] == 2
    assert engine.api.tokens_seen == ["access-1", "access-2", "access-2"]


@pytest.mark.asyncio
async def test_second_rejection_counts_as_failure(engine: Engine) -> None:
    engine.api.rejected_tokens.update({"access-1", "access-2"})
    engine.poller.register_static((VEHICLE_ID,))

    result = await engine.poller.poll_once(VEHICLE_ID)

    assert result.error is not None
    assert engine.registry.get(VEHICLE_ID).consecutive_failures == 1


@pytest.mark.asyncio
async def test_transient_auth_error_counts_as_failure(engine: Engine) -> None:
    engine.api.errors["refresh_token"] = [TransientAuthError("HTTP 502")]
    engine.poller.register_static((VEHICLE_ID,))

    await engine.poller.poll_once(VEHICLE_ID)

    assert engine.registry.get(VEHICLE_ID).consecutive_failures == 1


@pytest.mark.asyncio
async def test_auth_error_propagates(engine: Engine) -> None:
    engine.api.errors["refresh_token"] = [AuthError("invalid_grant")]
    engine.poller.register_static((VEHICLE_ID,))

    with pytest.raises(AuthError):
        await engine.poller.poll_once(VEHICLE_ID)

    device = engine.registry.get(VEHICLE_ID)
    assert device.in_flight is False
    assert device.consecutive_failures == 0


@pytest.mark.asyncio
async def test_second_poll_while_in_flight_is_refused(engine: Engine) -> None:
    engine.api.poll_gate = asyncio.Event()
    engine.poller.register_static((VEHICLE_ID,))

    first = asyncio.create_task(engine.poller.poll_once(VEHICLE_ID))
    for _ in range(10):
        await asyncio.sleep(0)
    assert engine.registry.get(VEHICLE_ID).in_flight is True

    overlapped = await engine.poller.poll_once(VEHICLE_ID)
    assert overlapped.overlapped is True
    assert engine.api.calls["get_vehicle"] == 1

    engine.api.poll_gate.set()
    assert (await first).published is True


@pytest.mark.asyncio
async def test_cancelled_poll_publishes_nothing(engine: Engine) -> None:
    engine.api.poll_gate = asyncio.Event()
    engine.poller.register_static((VEHICLE_ID,))

    task = asyncio.create_task(engine.poller.poll_once(VEHICLE_ID))
    for _ in range(10):
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert engine.cache.get(VEHICLE_ID, engine.clock()) is None
    assert engine.registry.get(VEHICLE_ID).in_flight is False


@pytest.mark.asyncio
async def test_unknown_device_raises_key_error(engine: Engine) -> None:
    with pytest.raises(KeyError):
        await engine.poller.poll_once("nope")


@pytest.mark.asyncio
async def test_discover_registers_every_vehicle(api: FakeVehicleApi, clock: FakeClock) -> None:
    api.states = {"1001": "online", "1002": "asleep"}
    engine = build_engine(api, clock, ExporterConfig(refresh_token="refresh-0"))

    devices = await engine.poller.discover()
    again = await engine.poller.discover()

    assert [device.id for device in devices] == ["1001", "1002"]
    assert [device.id for device in again] == ["1001", "1002"]
    assert devices[0] is again[0]
    assert len(engine.registry) == 2
    assert engine.registry.get("1002").availability == Availability.ASLEEP


@pytest.mark.asyncio
async def test_discover_honours_allow_list(api: FakeVehicleApi, clock: FakeClock) -> None:
    api.states = {"1001": "online", "1002": "asleep"}
    engine = build_engine(api, clock, ExporterConfig(refresh_token="refresh-0", vehicle_ids=("1902",)))

    devices = await engine.poller.discover()

    assert [device.id for device in devices] == ["1002"]
