"""Service facade tying the bridge components together.

``BridgeService`` is the single entry point for both directions:

- the MQTT transport hands it every inbound message, which is routed through
  a static dispatch table keyed by topic kind;
- backend callers use its coroutine methods (create a command, trigger an
  OTA job, read records, push credentials).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import msgspec
from aiomqtt.message import Message

from ..config.model import RuntimeConfig
from ..const import OTA_LIST_DEFAULT_LIMIT
from ..mqtt.messages import QueuedPublish
from ..protocol.payloads import (
    AckPayload,
    HeartbeatPayload,
    OtaProgressPayload,
    PayloadValidationError,
    RegistrationRequestPayload,
    TelemetryPayload,
    decode_payload,
)
from ..protocol.topics import MQTT_SUBSCRIPTIONS, Subscription, TopicKind, TopicRoute, parse_topic
from ..state.context import BridgeState
from ..state.lifecycle import CommandSource
from ..store.base import AlarmSink, CommandLedger, CommandRecord, DeviceDirectory, FirmwareStore, OtaJobRecord
from ..store.sql import SessionFactory, SqlAlarmSink, SqlCommandLedger, SqlDeviceDirectory, SqlFirmwareStore
from ..util import log_payload
from .base import PublishCallable, publisher_not_ready
from .commands import CommandDispatcher, DispatchResult
from .ota import OtaOrchestrator, OtaTriggerResult
from .registration import RegistrationService
from .retry import SleepCallable
from .telemetry import TelemetryIngestor

logger = logging.getLogger("fleetbridge.service")

Decoder = Callable[[int | None, bytes], Any]
DeviceApplier = Callable[[int, Any], Awaitable[Any]]
BrokerApplier = Callable[[Any], Awaitable[Any]]


class InboundRoute(msgspec.Struct, frozen=True):
    """One dispatch-table entry: decode the payload, then apply it.

    Per-device channels set ``applier``; broker-wide channels, which carry no
    device id in the topic, set ``broker_applier``.
    """

    decoder: Decoder
    applier: DeviceApplier | None = None
    broker_applier: BrokerApplier | None = None


def _device_decoder(payload_type: type[Any]) -> Decoder:
    def decode(device_id: int | None, raw: bytes) -> Any:
        if device_id is None:
            return None
        return decode_payload(raw, payload_type)

    return decode


def _decode_registration(device_id: int | None, raw: bytes) -> RegistrationRequestPayload:
    return decode_payload(raw, RegistrationRequestPayload)


def message_payload(message: Message) -> bytes:
    payload = message.payload
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    return str(payload).encode("utf-8")


class BridgeService:
    """Service facade orchestrating device traffic and backend requests."""

    def __init__(
        self,
        config: RuntimeConfig,
        state: BridgeState,
        *,
        directory: DeviceDirectory,
        firmware: FirmwareStore,
        ledger: CommandLedger,
        alarms: AlarmSink,
        sleep: SleepCallable = asyncio.sleep,
    ) -> None:
        self.config = config
        self.state = state
        self._publisher: PublishCallable = publisher_not_ready

        self.commands = CommandDispatcher(config, state, ledger, directory, self.publish, sleep=sleep)
        self.ota = OtaOrchestrator(config, state, ledger, directory, firmware, self.commands)
        self.telemetry = TelemetryIngestor(config, state, directory, alarms)
        self.registration = RegistrationService(config, state, directory, self.publish, sleep=sleep)

        # Built once; the transport installs the matching subscriptions on
        # every broker session.
        self._routes: dict[TopicKind, InboundRoute] = {
            TopicKind.COMMAND_ACK: InboundRoute(_device_decoder(AckPayload), self._apply_ack),
            TopicKind.HEARTBEAT: InboundRoute(_device_decoder(HeartbeatPayload), self._apply_heartbeat),
            TopicKind.TELEMETRY: InboundRoute(_device_decoder(TelemetryPayload), self._apply_telemetry),
            TopicKind.OTA_PROGRESS: InboundRoute(_device_decoder(OtaProgressPayload), self._apply_ota_progress),
            TopicKind.REGISTER_REQUEST: InboundRoute(_decode_registration, broker_applier=self._apply_registration),
        }

    @classmethod
    def from_session_factory(
        cls,
        config: RuntimeConfig,
        state: BridgeState,
        session_factory: SessionFactory,
    ) -> BridgeService:
        return cls(
            config,
            state,
            directory=SqlDeviceDirectory(session_factory),
            firmware=SqlFirmwareStore(session_factory, config.firmware_base_url),
            ledger=SqlCommandLedger(session_factory),
            alarms=SqlAlarmSink(session_factory),
        )

    # --- Transport plumbing ---

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return tuple(sub for sub in MQTT_SUBSCRIPTIONS if sub.kind in self._routes)

    @property
    def inbound_kinds(self) -> tuple[TopicKind, ...]:
        return tuple(self._routes)

    def register_publisher(self, publisher: PublishCallable) -> None:
        self._publisher = publisher

    def detach_publisher(self) -> None:
        self._publisher = publisher_not_ready

    async def publish(self, message: QueuedPublish) -> None:
        log_payload(logger, logging.DEBUG, f"MQTT PUB > {message.topic_name}", message.payload)
        await self._publisher(message)

    def route_message(self, message: Message) -> TopicRoute | None:
        route = parse_topic(str(message.topic))
        if route is None or route.kind not in self._routes:
            self.state.record_drop("unrouted_topic")
            logger.debug("Ignoring message on unrouted topic %s", message.topic)
            return None
        return route

    async def handle_mqtt_message(self, message: Message) -> bool:
        route = self.route_message(message)
        if route is None:
            return False
        return await self.handle_route(route, message_payload(message))

    async def handle_route(self, route: TopicRoute, payload: bytes) -> bool:
        """Decode and apply one inbound message; False when it was dropped."""
        self.state.record_inbound(route.kind.value)
        log_payload(logger, logging.DEBUG, f"MQTT SUB < {route.raw}", payload)

        entry = self._routes[route.kind]
        try:
            effect = entry.decoder(route.device_id, payload)
        except PayloadValidationError as exc:
            self.state.record_drop(f"{route.kind.value}_invalid")
            logger.warning("Invalid %s payload on %s dropped: %s", route.kind.value, route.raw, exc.message)
            return False
        if effect is None:
            self.state.record_drop(f"{route.kind.value}_invalid")
            logger.warning("Message on %s carries no usable device id; dropped", route.raw)
            return False

        device_id = route.device_id
        if device_id is not None and entry.applier is not None:
            await entry.applier(device_id, effect)
        elif device_id is None and entry.broker_applier is not None:
            await entry.broker_applier(effect)
        else:
            self.state.record_drop(f"{route.kind.value}_invalid")
            logger.warning("Message on %s does not match its channel scope; dropped", route.raw)
            return False
        return True

    async def _apply_ack(self, device_id: int, ack: AckPayload) -> bool:
        return await self.commands.apply_ack(device_id, ack)

    async def _apply_heartbeat(self, device_id: int, heartbeat: HeartbeatPayload) -> bool:
        return await self.telemetry.apply_heartbeat(device_id, heartbeat)

    async def _apply_telemetry(self, device_id: int, telemetry: TelemetryPayload) -> int | None:
        return await self.telemetry.apply_telemetry(device_id, telemetry)

    async def _apply_ota_progress(self, device_id: int, report: OtaProgressPayload) -> bool:
        return await self.ota.apply_progress(device_id, report)

    async def _apply_registration(self, request: RegistrationRequestPayload) -> None:
        await self.registration.record_request(request)

    # --- Caller contract ---

    async def create_command(
        self,
        device_id: int,
        type: str,
        payload: dict[str, Any] | None = None,
        *,
        source: CommandSource | None = None,
        requested_by: int | None = None,
    ) -> CommandRecord:
        return await self.commands.create_command(
            device_id,
            type,
            payload,
            source=source,
            requested_by=requested_by,
        )

    async def dispatch_command(self, command_id: int) -> DispatchResult:
        return await self.commands.dispatch(command_id)

    async def get_command(self, command_id: int) -> CommandRecord:
        return await self.commands.get_command(command_id)

    async def trigger_ota(
        self,
        device_id: int,
        release_id: int,
        *,
        requested_by: int | None = None,
    ) -> OtaTriggerResult:
        return await self.ota.trigger(device_id, release_id, requested_by=requested_by)

    async def get_ota_job(self, job_id: int) -> OtaJobRecord:
        return await self.ota.get_ota_job(job_id)

    async def list_ota_jobs(self, device_id: int, limit: int | None = OTA_LIST_DEFAULT_LIMIT) -> list[OtaJobRecord]:
        return await self.ota.list_ota_jobs(device_id, limit)

    async def send_credentials(self, mac: str, device_id: int, device_key: str) -> list[str]:
        return await self.registration.send_credentials(mac, device_id, device_key)


__all__ = ["BridgeService", "InboundRoute", "message_payload"]
