"""Tests for heartbeat and telemetry admission."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from fleetbridge.protocol.payloads import HeartbeatPayload, TelemetryData, TelemetryPayload
from fleetbridge.services.telemetry import build_alarm_candidates
from fleetbridge.store.models import AlarmEvent, AlarmSeverity, AlarmType, SensorReading
from tests.mocks import DEVICE_ID, DEVICE_KEY, HOME_ID, OTHER_DEVICE_ID, backdated, set_columns


def _data(**overrides) -> TelemetryData:
    values = {"current": 1.2, "gas_ppm": 120.0, "flame": False, "bin_level": 35.0}
    values.update(overrides)
    return TelemetryData(**values)


async def _alarm_rows(session_factory) -> list[AlarmEvent]:
    async with session_factory() as session:
        return list(await session.scalars(select(AlarmEvent).order_by(AlarmEvent.id)))


async def _reading_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(SensorReading))


def test_alarm_candidates_follow_thresholds(runtime_config) -> None:
    assert build_alarm_candidates(_data(), runtime_config) == []

    candidates = build_alarm_candidates(_data(gas_ppm=750.0, flame=True, bin_level=92.5), runtime_config)

    assert [(c.type, c.severity) for c in candidates] == [
        (AlarmType.GAS, AlarmSeverity.CRITICAL),
        (AlarmType.FLAME, AlarmSeverity.CRITICAL),
        (AlarmType.TRASH, AlarmSeverity.MEDIUM),
    ]
    assert candidates[0].message == "Gas level 750 ppm exceeds 500 ppm"


def test_power_alarm_only_when_threshold_configured(runtime_config) -> None:
    assert build_alarm_candidates(_data(current=40.0), runtime_config) == []

    runtime_config.power_current_threshold = 16.0
    candidates = build_alarm_candidates(_data(current=40.0), runtime_config)

    assert [(c.type, c.severity) for c in candidates] == [(AlarmType.POWER, AlarmSeverity.HIGH)]


def test_thresholds_are_strict(runtime_config) -> None:
    data = _data(gas_ppm=runtime_config.alarm_gas_ppm_threshold, bin_level=runtime_config.alarm_bin_level_threshold)

    assert build_alarm_candidates(data, runtime_config) == []


@pytest.mark.asyncio
async def test_heartbeat_with_valid_key_marks_online(bridge_service, directory) -> None:
    accepted = await bridge_service.telemetry.apply_heartbeat(
        DEVICE_ID,
        HeartbeatPayload(device_key=DEVICE_KEY, mqtt_client_id="esp32-kitchen"),
    )

    assert accepted is True
    device = await directory.get_device(DEVICE_ID)
    assert device.online is True
    assert device.last_seen_at is not None
    assert device.mqtt_client_id == "esp32-kitchen"
    assert bridge_service.state.heartbeats_accepted == 1


@pytest.mark.asyncio
async def test_heartbeat_with_wrong_key_changes_nothing(bridge_service, directory) -> None:
    accepted = await bridge_service.telemetry.apply_heartbeat(DEVICE_ID, HeartbeatPayload(device_key="forged"))

    assert accepted is False
    device = await directory.get_device(DEVICE_ID)
    assert device.online is False
    assert device.last_seen_at is None
    assert bridge_service.state.inbound_drops["heartbeat_auth"] == 1


@pytest.mark.asyncio
async def test_telemetry_persists_reading_and_raises_alarm(bridge_service, directory, session_factory) -> None:
    payload = TelemetryPayload(device_key=DEVICE_KEY, data=_data(gas_ppm=900.0), ts=1_700_000_000_000)

    reading_id = await bridge_service.telemetry.apply_telemetry(DEVICE_ID, payload)

    assert reading_id is not None
    async with session_factory() as session:
        reading = await session.get(SensorReading, reading_id)
        assert reading.gas_ppm == pytest.approx(900.0)
        assert reading.timestamp.replace(tzinfo=timezone.utc) == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    alarms = await _alarm_rows(session_factory)
    assert [(a.type, a.home_id, a.device_id) for a in alarms] == [(AlarmType.GAS, HOME_ID, DEVICE_ID)]
    assert alarms[0].sensor_reading_id == reading_id
    assert (await directory.get_device(DEVICE_ID)).online is True
    assert bridge_service.state.telemetry_accepted == 1
    assert bridge_service.state.alarms_created == 1


@pytest.mark.asyncio
async def test_telemetry_with_wrong_key_leaves_no_trace(bridge_service, directory, session_factory) -> None:
    payload = TelemetryPayload(device_key="forged", data=_data(flame=True))

    assert await bridge_service.telemetry.apply_telemetry(DEVICE_ID, payload) is None

    assert await _reading_count(session_factory) == 0
    assert await _alarm_rows(session_factory) == []
    assert (await directory.get_device(DEVICE_ID)).online is False
    assert bridge_service.state.inbound_drops["telemetry_auth"] == 1


@pytest.mark.asyncio
async def test_telemetry_for_unknown_device_is_dropped(bridge_service, session_factory) -> None:
    payload = TelemetryPayload(device_key=DEVICE_KEY, data=_data())

    assert await bridge_service.telemetry.apply_telemetry(404, payload) is None

    assert await _reading_count(session_factory) == 0
    assert bridge_service.state.inbound_drops["telemetry_unknown_device"] == 1


@pytest.mark.asyncio
async def test_alarms_are_deduplicated_inside_window(bridge_service, session_factory) -> None:
    payload = TelemetryPayload(device_key=DEVICE_KEY, data=_data(flame=True))

    await bridge_service.telemetry.apply_telemetry(DEVICE_ID, payload)
    await bridge_service.telemetry.apply_telemetry(DEVICE_ID, payload)

    alarms = await _alarm_rows(session_factory)
    assert len(alarms) == 1
    assert await _reading_count(session_factory) == 2
    assert bridge_service.state.alarms_suppressed == 1

    # Once the first alarm is older than the window the next one is recorded.
    await set_columns(session_factory, AlarmEvent, alarms[0].id, triggered_at=backdated(120))
    await bridge_service.telemetry.apply_telemetry(DEVICE_ID, payload)

    assert len(await _alarm_rows(session_factory)) == 2


@pytest.mark.asyncio
async def test_alarm_dedup_is_per_device(bridge_service, session_factory) -> None:
    data = _data(flame=True)

    await bridge_service.telemetry.apply_telemetry(DEVICE_ID, TelemetryPayload(device_key=DEVICE_KEY, data=data))
    await bridge_service.telemetry.apply_telemetry(
        OTHER_DEVICE_ID,
        TelemetryPayload(device_key="key-8-secret", data=data),
    )

    alarms = await _alarm_rows(session_factory)
    assert sorted(a.device_id for a in alarms) == [DEVICE_ID, OTHER_DEVICE_ID]
