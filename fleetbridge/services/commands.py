"""Command dispatch and acknowledgment reconciliation.

A command is written PENDING by the caller-facing side, published once (with
bounded retry) to ``devices/{deviceId}/commands``, and then moved along its
lifecycle by device acks or by the timeout sweeper. All moves are conditional
ledger updates, so a stale or duplicated input simply matches zero rows.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiomqtt
import msgspec

from ..config.model import RuntimeConfig
from ..errors import BusNotConnectedError, NotFoundError
from ..mqtt.messages import QueuedPublish
from ..protocol.payloads import AckPayload, CommandEnvelope, encode_payload
from ..protocol.topics import QOSLevel, TopicKind, device_topic
from ..state.context import BridgeState
from ..state.lifecycle import CommandSource, CommandStatus
from ..store.base import CommandLedger, CommandRecord, DeviceDirectory
from .base import BridgeComponent, PublishCallable
from .retry import SleepCallable

logger = logging.getLogger("fleetbridge.commands")

COMMAND_NOT_PENDING = "COMMAND_NOT_PENDING"
COMMAND_NOT_FOUND = "COMMAND_NOT_FOUND"
DEVICE_NOT_FOUND = "DEVICE_NOT_FOUND"
PUBLISH_FAILED = "PUBLISH_FAILED"
UNKNOWN_ACK_ERROR = "UNKNOWN"

# Publish failures that end in FAILED instead of escaping dispatch().
_DISPATCH_ERRORS: tuple[type[BaseException], ...] = (
    BusNotConnectedError,
    aiomqtt.MqttError,
    OSError,
    asyncio.TimeoutError,
    ValueError,
    TypeError,
)


class DispatchResult(msgspec.Struct, frozen=True):
    """Outcome of one dispatch call; never raised, always returned."""

    ok: bool
    command_id: int
    status: CommandStatus | None = None
    error: str | None = None


def build_command_message(command: CommandRecord) -> QueuedPublish:
    envelope = CommandEnvelope(command_id=command.id, type=command.type, payload=command.payload)
    return QueuedPublish(
        topic_name=device_topic(command.device_id, TopicKind.COMMANDS),
        payload=encode_payload(envelope),
        qos=QOSLevel.QOS_1,
        retain=False,
        correlation_data=command.correlation_id.encode("ascii"),
    )


def publish_failure_code(exc: BaseException) -> str:
    return f"{PUBLISH_FAILED}: {exc.__class__.__name__}"


class CommandDispatcher(BridgeComponent):
    """Publishes PENDING commands and applies device acknowledgments."""

    def __init__(
        self,
        config: RuntimeConfig,
        state: BridgeState,
        ledger: CommandLedger,
        directory: DeviceDirectory,
        publish: PublishCallable,
        *,
        sleep: SleepCallable = asyncio.sleep,
    ) -> None:
        super().__init__(config, state, publish, sleep=sleep)
        self.ledger = ledger
        self.directory = directory

    async def create_command(
        self,
        device_id: int,
        type: str,
        payload: dict[str, Any] | None = None,
        *,
        source: CommandSource | None = None,
        requested_by: int | None = None,
    ) -> CommandRecord:
        """Persist a PENDING command, dispatch it and return the re-read row."""
        device = await self.directory.get_device(device_id)
        if device is None or device.is_deleted:
            raise NotFoundError(DEVICE_NOT_FOUND, f"device {device_id} not found")

        if source is None:
            source = CommandSource.USER if requested_by is not None else CommandSource.BACKEND

        record = await self.ledger.create_command(
            device_id=device_id,
            type=type,
            payload=dict(payload or {}),
            source=source,
            requested_by=requested_by,
        )
        self.state.commands_created += 1
        logger.info(
            "Command %d (%s) created for device %d by %s",
            record.id,
            record.type,
            device_id,
            source,
        )

        await self.dispatch(record.id)
        return await self.get_command(record.id)

    async def get_command(self, command_id: int) -> CommandRecord:
        record = await self.ledger.get_command(command_id)
        if record is None:
            raise NotFoundError(COMMAND_NOT_FOUND, f"command {command_id} not found")
        return record

    async def dispatch(self, command_id: int) -> DispatchResult:
        command = await self.ledger.get_command(command_id)
        if command is None:
            logger.warning("Dispatch requested for unknown command %d", command_id)
            return DispatchResult(ok=False, command_id=command_id, error=COMMAND_NOT_FOUND)

        if command.status != CommandStatus.PENDING:
            self.state.commands_dispatch_ignored += 1
            logger.info("Command %d is %s, not PENDING; dispatch skipped", command.id, command.status)
            return DispatchResult(
                ok=False,
                command_id=command.id,
                status=command.status,
                error=COMMAND_NOT_PENDING,
            )

        message = build_command_message(command)
        try:
            await self.publish_with_retry(message, label=f"command {command.id} publish")
        except _DISPATCH_ERRORS as exc:
            error = publish_failure_code(exc)
            logger.warning(
                "Command %d publish to %s failed after %d attempt(s): %s",
                command.id,
                message.topic_name,
                self.retry_policy.max_attempts,
                exc,
            )
            moved = await self.ledger.transition_command(command.id, "reject", last_error=error)
            if moved:
                self.state.commands_failed += 1
            return DispatchResult(
                ok=False,
                command_id=command.id,
                status=await self._status_after(command.id, moved, CommandStatus.FAILED),
                error=error,
            )

        moved = await self.ledger.transition_command(command.id, "send")
        if moved:
            self.state.commands_sent += 1
            logger.info("Command %d sent to %s", command.id, message.topic_name)
        else:
            logger.info("Command %d left PENDING before SENT could be recorded", command.id)
        return DispatchResult(
            ok=True,
            command_id=command.id,
            status=await self._status_after(command.id, moved, CommandStatus.SENT),
        )

    async def apply_ack(self, device_id: int, ack: AckPayload) -> bool:
        """Apply an ack published on ``devices/{device_id}/commands/ack``."""
        command = await self.ledger.get_command(ack.command_id)
        if command is None:
            self.state.record_drop("ack_unknown_command")
            logger.info("Ack for unknown command %d from device %d dropped", ack.command_id, device_id)
            return False
        if command.device_id != device_id:
            self.state.record_drop("ack_device_mismatch")
            logger.warning(
                "Ack for command %d arrived on device %d topic but belongs to device %d; dropped",
                command.id,
                device_id,
                command.device_id,
            )
            return False

        if ack.status == CommandStatus.ACKED:
            event, error = "ack", None
        else:
            event, error = "nack", ack.error or UNKNOWN_ACK_ERROR

        applied = await self.ledger.transition_command(
            command.id,
            event,
            device_id=device_id,
            last_error=error,
            set_acked_at=True,
        )
        if applied:
            self.state.acks_applied += 1
            logger.info("Command %d %s by device %d", command.id, ack.status, device_id)
        else:
            self.state.acks_ignored += 1
            logger.info(
                "Ack %s for command %d ignored; command already %s",
                ack.status,
                command.id,
                command.status,
            )
        return applied

    async def _status_after(self, command_id: int, moved: bool, target: CommandStatus) -> CommandStatus | None:
        if moved:
            return target
        current = await self.ledger.get_command(command_id)
        return current.status if current is not None else None


__all__ = [
    "COMMAND_NOT_FOUND",
    "COMMAND_NOT_PENDING",
    "CommandDispatcher",
    "DEVICE_NOT_FOUND",
    "DispatchResult",
    "build_command_message",
    "publish_failure_code",
]
