"""Device registration handshake.

Unregistered devices announce themselves on ``devices/register/request``;
the bridge only records the request. An operator then provisions the device
and pushes credentials with :meth:`RegistrationService.send_credentials`,
which publishes to the MAC-addressed reply topic (device not yet configured)
and to the device command topic (device already configured).
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

import msgspec

from ..config.model import RuntimeConfig
from ..errors import BadRequestError, NotFoundError, PublishFailedError
from ..mqtt.messages import QueuedPublish
from ..protocol.payloads import CommandEnvelope, CredentialsPayload, RegistrationRequestPayload, encode_payload
from ..protocol.topics import QOSLevel, TopicKind, device_topic, registration_reply_topic
from ..state.context import BridgeState
from ..store.base import DeviceDirectory
from ..util import epoch_ms, normalize_mac
from .base import BridgeComponent, PublishCallable
from .commands import DEVICE_NOT_FOUND, PUBLISH_FAILED
from .retry import TRANSPORT_ERRORS, SleepCallable

logger = logging.getLogger("fleetbridge.registration")

SET_CREDENTIALS = "SET_CREDENTIALS"
INVALID_MAC = "INVALID_MAC"
INVALID_REQUEST = "INVALID_REQUEST"
MAC_MISMATCH = "MAC_MISMATCH"

_MAC_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}[:-]){5}([0-9A-Fa-f]{2})$")


def is_valid_mac(mac: str) -> bool:
    return bool(_MAC_PATTERN.match(mac))


class RegistrationService(BridgeComponent):
    """Logs registration requests and pushes device credentials."""

    def __init__(
        self,
        config: RuntimeConfig,
        state: BridgeState,
        directory: DeviceDirectory,
        publish: PublishCallable,
        *,
        sleep: SleepCallable = asyncio.sleep,
    ) -> None:
        super().__init__(config, state, publish, sleep=sleep)
        self.directory = directory

    async def record_request(self, request: RegistrationRequestPayload) -> None:
        self.state.registration_requests += 1
        logger.info(
            "Registration request: mac=%s type=%s firmware=%s ip=%s; awaiting provisioning",
            request.mac,
            request.type,
            request.firmware,
            request.ip,
        )

    async def send_credentials(self, mac: str, device_id: int, device_key: str) -> list[str]:
        """Publish ``SET_CREDENTIALS`` to both reply topics; returns the topics."""
        if not is_valid_mac(mac):
            raise BadRequestError(INVALID_MAC, f"invalid MAC address: {mac!r}")
        if device_id <= 0 or not device_key:
            raise BadRequestError(INVALID_REQUEST, "deviceId must be positive and deviceKey non-empty")

        device = await self.directory.get_device(device_id)
        if device is None or device.is_deleted:
            raise NotFoundError(DEVICE_NOT_FOUND, f"device {device_id} not found")
        if device.mac and normalize_mac(device.mac) != normalize_mac(mac):
            raise BadRequestError(MAC_MISMATCH, f"MAC address does not match device {device_id}")

        envelope = CommandEnvelope(
            command_id=epoch_ms(),
            type=SET_CREDENTIALS,
            payload=encode_credentials(device_id, device_key),
        )
        body = encode_payload(envelope)
        topics = [registration_reply_topic(mac), device_topic(device_id, TopicKind.COMMANDS)]

        for topic in topics:
            message = QueuedPublish(topic_name=topic, payload=body, qos=QOSLevel.QOS_1)
            try:
                await self.publish_with_retry(message, label=f"credentials publish to {topic}")
            except TRANSPORT_ERRORS as exc:
                logger.error("Credentials for device %d could not be published to %s: %s", device_id, topic, exc)
                raise PublishFailedError(PUBLISH_FAILED, f"publish to {topic} failed: {exc}") from exc

        self.state.credentials_sent += 1
        logger.info("Sent credentials to device mac=%s id=%d (%s)", mac, device_id, ", ".join(topics))
        return topics


def encode_credentials(device_id: int, device_key: str) -> dict[str, Any]:
    return msgspec.to_builtins(CredentialsPayload(device_id=device_id, device_key=device_key))


__all__ = [
    "INVALID_MAC",
    "INVALID_REQUEST",
    "MAC_MISMATCH",
    "RegistrationService",
    "SET_CREDENTIALS",
    "is_valid_mac",
]
