"""Tests for command dispatch and ack reconciliation."""

from __future__ import annotations

import msgspec
import pytest

from fleetbridge.errors import NotFoundError
from fleetbridge.protocol.payloads import AckPayload
from fleetbridge.protocol.topics import QOSLevel
from fleetbridge.services.commands import COMMAND_NOT_FOUND, COMMAND_NOT_PENDING, DEVICE_NOT_FOUND
from fleetbridge.services.sweepers import CommandTimeoutSweeper
from fleetbridge.state.lifecycle import CommandSource, CommandStatus
from fleetbridge.store.models import Command
from tests.mocks import (
    DELETED_DEVICE_ID,
    DEVICE_ID,
    OTHER_DEVICE_ID,
    FakePublisher,
    backdated,
    make_message,
    set_columns,
)


@pytest.mark.asyncio
async def test_create_command_publishes_envelope_and_marks_sent(bridge_service, publisher) -> None:
    record = await bridge_service.create_command(DEVICE_ID, "RELAY_SET", {"on": True})

    assert record.status == CommandStatus.SENT
    assert record.source == CommandSource.BACKEND
    assert publisher.topics == [f"devices/{DEVICE_ID}/commands"]

    message = publisher.messages[0]
    assert message.qos == QOSLevel.QOS_1
    assert message.retain is False
    assert message.correlation_data == record.correlation_id.encode("ascii")
    assert msgspec.json.decode(message.payload) == {
        "commandId": record.id,
        "type": "RELAY_SET",
        "payload": {"on": True},
    }
    assert bridge_service.state.commands_created == 1
    assert bridge_service.state.commands_sent == 1


@pytest.mark.asyncio
async def test_create_command_with_requester_defaults_to_user_source(bridge_service) -> None:
    record = await bridge_service.create_command(DEVICE_ID, "PING", requested_by=42)

    assert record.source == CommandSource.USER
    assert record.requested_by == 42
    assert record.payload == {}


@pytest.mark.asyncio
async def test_create_command_for_missing_or_deleted_device_raises(bridge_service, publisher) -> None:
    for device_id in (404, DELETED_DEVICE_ID):
        with pytest.raises(NotFoundError) as excinfo:
            await bridge_service.create_command(device_id, "PING")
        assert excinfo.value.code == DEVICE_NOT_FOUND
        assert excinfo.value.http_status == 404

    assert publisher.messages == []


@pytest.mark.asyncio
async def test_dispatch_retries_with_backoff_then_sends(bridge_service, ledger, recording_sleep) -> None:
    flaky = FakePublisher(failures=2)
    bridge_service.register_publisher(flaky)
    created = await ledger.create_command(
        device_id=DEVICE_ID,
        type="PING",
        payload={},
        source=CommandSource.BACKEND,
    )

    result = await bridge_service.dispatch_command(created.id)

    assert result.ok is True
    assert result.status == CommandStatus.SENT
    assert flaky.calls == 3
    assert recording_sleep.delays == [0.5, 1.0]
    assert bridge_service.state.publish_attempts == 3
    assert bridge_service.state.publish_retries == 2
    assert (await ledger.get_command(created.id)).status == CommandStatus.SENT


@pytest.mark.asyncio
async def test_dispatch_exhausting_retries_marks_failed(bridge_service, ledger, recording_sleep) -> None:
    bridge_service.register_publisher(FakePublisher(failures=10))
    created = await ledger.create_command(
        device_id=DEVICE_ID,
        type="PING",
        payload={},
        source=CommandSource.BACKEND,
    )

    result = await bridge_service.dispatch_command(created.id)

    assert result.ok is False
    assert result.status == CommandStatus.FAILED
    assert result.error == "PUBLISH_FAILED: BusNotConnectedError"
    assert recording_sleep.delays == [0.5, 1.0, 2.0]
    stored = await ledger.get_command(created.id)
    assert stored.status == CommandStatus.FAILED
    assert stored.last_error == "PUBLISH_FAILED: BusNotConnectedError"
    assert bridge_service.state.commands_failed == 1


@pytest.mark.asyncio
async def test_dispatch_without_transport_fails_command(bridge_service, ledger) -> None:
    bridge_service.detach_publisher()

    record = await bridge_service.create_command(DEVICE_ID, "PING")

    assert record.status == CommandStatus.FAILED
    assert record.last_error == "PUBLISH_FAILED: BusNotConnectedError"


@pytest.mark.asyncio
async def test_dispatch_is_a_no_op_unless_pending(bridge_service, publisher) -> None:
    record = await bridge_service.create_command(DEVICE_ID, "PING")
    assert len(publisher.messages) == 1

    result = await bridge_service.dispatch_command(record.id)

    assert result.ok is False
    assert result.error == COMMAND_NOT_PENDING
    assert result.status == CommandStatus.SENT
    assert len(publisher.messages) == 1
    assert bridge_service.state.commands_dispatch_ignored == 1


@pytest.mark.asyncio
async def test_dispatch_unknown_command_reports_not_found(bridge_service, publisher) -> None:
    result = await bridge_service.dispatch_command(999)

    assert result.ok is False
    assert result.error == COMMAND_NOT_FOUND
    assert publisher.messages == []


@pytest.mark.asyncio
async def test_get_command_missing_raises(bridge_service) -> None:
    with pytest.raises(NotFoundError) as excinfo:
        await bridge_service.get_command(12345)
    assert excinfo.value.code == COMMAND_NOT_FOUND


@pytest.mark.asyncio
async def test_ack_moves_sent_command_to_acked_once(bridge_service, ledger) -> None:
    record = await bridge_service.create_command(DEVICE_ID, "PING")
    ack = AckPayload(command_id=record.id, status="ACKED")

    assert await bridge_service.commands.apply_ack(DEVICE_ID, ack) is True
    first = await ledger.get_command(record.id)
    assert first.status == CommandStatus.ACKED
    assert first.acked_at is not None
    assert first.last_error is None

    # Duplicate delivery (QoS 1) changes nothing.
    assert await bridge_service.commands.apply_ack(DEVICE_ID, ack) is False
    second = await ledger.get_command(record.id)
    assert second.status == CommandStatus.ACKED
    assert second.acked_at == first.acked_at
    assert bridge_service.state.acks_applied == 1
    assert bridge_service.state.acks_ignored == 1


@pytest.mark.asyncio
async def test_failed_ack_records_device_error(bridge_service, ledger) -> None:
    record = await bridge_service.create_command(DEVICE_ID, "RELAY_SET", {"on": True})

    applied = await bridge_service.commands.apply_ack(
        DEVICE_ID,
        AckPayload(command_id=record.id, status="FAILED", error="relay stuck"),
    )

    assert applied is True
    stored = await ledger.get_command(record.id)
    assert stored.status == CommandStatus.FAILED
    assert stored.last_error == "relay stuck"


@pytest.mark.asyncio
async def test_failed_ack_without_error_uses_unknown(bridge_service, ledger) -> None:
    record = await bridge_service.create_command(DEVICE_ID, "PING")

    await bridge_service.commands.apply_ack(DEVICE_ID, AckPayload(command_id=record.id, status="FAILED"))

    assert (await ledger.get_command(record.id)).last_error == "UNKNOWN"


@pytest.mark.asyncio
async def test_ack_from_another_device_is_dropped(bridge_service, ledger) -> None:
    record = await bridge_service.create_command(DEVICE_ID, "PING")

    applied = await bridge_service.commands.apply_ack(
        OTHER_DEVICE_ID,
        AckPayload(command_id=record.id, status="ACKED"),
    )

    assert applied is False
    assert (await ledger.get_command(record.id)).status == CommandStatus.SENT
    assert bridge_service.state.inbound_drops["ack_device_mismatch"] == 1


@pytest.mark.asyncio
async def test_ack_for_unknown_command_is_dropped(bridge_service) -> None:
    applied = await bridge_service.commands.apply_ack(DEVICE_ID, AckPayload(command_id=777, status="ACKED"))

    assert applied is False
    assert bridge_service.state.inbound_drops["ack_unknown_command"] == 1


@pytest.mark.asyncio
async def test_ack_on_pending_command_is_ignored(bridge_service, ledger) -> None:
    created = await ledger.create_command(
        device_id=DEVICE_ID,
        type="PING",
        payload={},
        source=CommandSource.BACKEND,
    )

    applied = await bridge_service.commands.apply_ack(DEVICE_ID, AckPayload(command_id=created.id, status="ACKED"))

    assert applied is False
    assert (await ledger.get_command(created.id)).status == CommandStatus.PENDING


@pytest.mark.asyncio
async def test_late_ack_rescues_timed_out_command(
    bridge_service,
    ledger,
    session_factory,
    runtime_config,
    runtime_state,
) -> None:
    record = await bridge_service.create_command(DEVICE_ID, "PING")
    await set_columns(session_factory, Command, record.id, created_at=backdated(60))

    sweeper = CommandTimeoutSweeper(runtime_config, runtime_state, ledger)
    assert await sweeper.tick() == 1
    timed_out = await ledger.get_command(record.id)
    assert timed_out.status == CommandStatus.TIMEOUT
    assert timed_out.last_error == "ACK_TIMEOUT"

    applied = await bridge_service.commands.apply_ack(DEVICE_ID, AckPayload(command_id=record.id, status="ACKED"))

    assert applied is True
    rescued = await ledger.get_command(record.id)
    assert rescued.status == CommandStatus.ACKED
    assert rescued.last_error is None
    # Acked rows are never expired again.
    assert await sweeper.tick() == 0


@pytest.mark.asyncio
async def test_ack_for_command_42_on_device_7(bridge_service, session_factory, ledger) -> None:
    now = backdated(1)
    async with session_factory.begin() as session:
        session.add(
            Command(
                id=42,
                device_id=DEVICE_ID,
                type="RELAY_SET",
                payload={"on": False},
                status=CommandStatus.SENT,
                correlation_id="0b6c4a8e-5d8f-4c1e-9d5a-000000000042",
                source=CommandSource.BACKEND,
                requested_by=None,
                acked_at=None,
                last_error=None,
                created_at=now,
                updated_at=now,
            )
        )

    handled = await bridge_service.handle_mqtt_message(
        make_message("devices/7/commands/ack", b'{"commandId":42,"status":"ACKED"}')
    )

    assert handled is True
    stored = await ledger.get_command(42)
    assert stored.status == CommandStatus.ACKED
    assert stored.acked_at is not None