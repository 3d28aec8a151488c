"""Pytest configuration for Fleet Bridge tests."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from fleetbridge.config.settings import RuntimeConfig
from fleetbridge.services.runtime import BridgeService
from fleetbridge.state.context import BridgeState, create_bridge_state
from fleetbridge.store.database import create_schema, create_session_factory
from fleetbridge.store.models import Device, FirmwareRelease
from fleetbridge.store.sql import SqlAlarmSink, SqlCommandLedger, SqlDeviceDirectory, SqlFirmwareStore
from tests.mocks import (
    DELETED_DEVICE_ID,
    DELETED_RELEASE_ID,
    DEVICE_ID,
    DEVICE_KEY,
    DEVICE_MAC,
    HOME_ID,
    OTHER_DEVICE_ID,
    OTHER_DEVICE_KEY,
    RELEASE_ID,
    FakePublisher,
    RecordingSleep,
    backdated,
)


@pytest.fixture(autouse=True)
def reset_logging_handlers():
    """Close and remove all logging handlers after each test to prevent ResourceWarnings."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        try:
            handler.close()
        except (OSError, RuntimeError):
            pass
        root.removeHandler(handler)


@pytest.fixture()
def runtime_config() -> RuntimeConfig:
    return RuntimeConfig(
        mqtt_host="localhost",
        mqtt_port=1883,
        mqtt_client_id="fleetbridge-test",
        publish_retries=3,
        publish_backoff_ms=(500, 1000, 2000),
        command_ack_timeout_ms=5_000,
        command_timeout_sweep_interval_ms=1_000,
        device_offline_threshold_ms=5_000,
        device_offline_sweep_interval_ms=1_000,
        ota_timeout_ms=600_000,
        ota_sweep_interval_ms=30_000,
        alarm_dedup_window_ms=60_000,
        database_url="sqlite+aiosqlite://",
        firmware_base_url="https://fw.example.test/api/v1/firmware",
        mqtt_inbound_queue_limit=4,
    )


@pytest.fixture()
def runtime_state(runtime_config: RuntimeConfig) -> BridgeState:
    return create_bridge_state(runtime_config)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fleet.db'}")
    await create_schema(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    factory = create_session_factory(engine)
    async with factory.begin() as session:
        session.add_all(
            [
                Device(
                    id=DEVICE_ID,
                    device_key=DEVICE_KEY,
                    name="kitchen",
                    home_id=HOME_ID,
                    mac=DEVICE_MAC,
                    online=False,
                    last_seen_at=None,
                    mqtt_client_id=None,
                    deleted_at=None,
                ),
                Device(
                    id=OTHER_DEVICE_ID,
                    device_key=OTHER_DEVICE_KEY,
                    name="garage",
                    home_id=HOME_ID,
                    mac=None,
                    online=False,
                    last_seen_at=None,
                    mqtt_client_id=None,
                    deleted_at=None,
                ),
                Device(
                    id=DELETED_DEVICE_ID,
                    device_key="key-9-secret",
                    name="retired",
                    home_id=None,
                    mac=None,
                    online=False,
                    last_seen_at=None,
                    mqtt_client_id=None,
                    deleted_at=backdated(3600),
                ),
                FirmwareRelease(
                    id=RELEASE_ID,
                    platform="esp32",
                    version="1.4.2",
                    sha256="ab" * 32,
                    size_bytes=524288,
                    download_url=None,
                    deleted_at=None,
                ),
                FirmwareRelease(
                    id=DELETED_RELEASE_ID,
                    platform="esp32",
                    version="0.9.0",
                    sha256="cd" * 32,
                    size_bytes=1024,
                    download_url="https://cdn.example.test/fw-0.9.0.bin",
                    deleted_at=backdated(3600),
                ),
            ]
        )
    return factory


@pytest.fixture()
def directory(session_factory: async_sessionmaker[AsyncSession]) -> SqlDeviceDirectory:
    return SqlDeviceDirectory(session_factory)


@pytest.fixture()
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> SqlCommandLedger:
    return SqlCommandLedger(session_factory)


@pytest.fixture()
def firmware(
    session_factory: async_sessionmaker[AsyncSession],
    runtime_config: RuntimeConfig,
) -> SqlFirmwareStore:
    return SqlFirmwareStore(session_factory, runtime_config.firmware_base_url)


@pytest.fixture()
def alarms(session_factory: async_sessionmaker[AsyncSession]) -> SqlAlarmSink:
    return SqlAlarmSink(session_factory)


@pytest.fixture()
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def bridge_service(
    runtime_config: RuntimeConfig,
    runtime_state: BridgeState,
    directory: SqlDeviceDirectory,
    firmware: SqlFirmwareStore,
    ledger: SqlCommandLedger,
    alarms: SqlAlarmSink,
    publisher: FakePublisher,
    recording_sleep: RecordingSleep,
) -> BridgeService:
    service = BridgeService(
        runtime_config,
        runtime_state,
        directory=directory,
        firmware=firmware,
        ledger=ledger,
        alarms=alarms,
        sleep=recording_sleep,
    )
    service.register_publisher(publisher)
    return service
