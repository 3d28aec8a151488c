"""MQTT topic helpers shared across Fleet Bridge components.

This module is the SINGLE SOURCE OF TRUTH for MQTT topic structures.
Avoid hardcoding topic strings elsewhere.

Layout::

    devices/{deviceId}/commands        bridge -> device
    devices/{deviceId}/commands/ack    device -> bridge
    devices/{deviceId}/heartbeat       device -> bridge
    devices/{deviceId}/telemetry       device -> bridge
    devices/{deviceId}/ota/progress    device -> bridge
    devices/register/request           unregistered device -> bridge
    devices/register/{MAC}             bridge -> unregistered device
"""

from __future__ import annotations

from enum import IntEnum, StrEnum

import msgspec

from ..const import MAX_RECORD_ID
from ..util import normalize_mac

DEVICES_ROOT = "devices"
REGISTER_SEGMENT = "register"
REGISTER_REQUEST_SEGMENT = "request"


class QOSLevel(IntEnum):
    QOS_0 = 0
    QOS_1 = 1
    QOS_2 = 2


class TopicKind(StrEnum):
    """Channel suffixes below ``devices/{deviceId}/``."""

    COMMANDS = "commands"
    COMMAND_ACK = "commands/ack"
    HEARTBEAT = "heartbeat"
    TELEMETRY = "telemetry"
    OTA_PROGRESS = "ota/progress"
    REGISTER_REQUEST = "register/request"


class TopicRoute(msgspec.Struct, frozen=True):
    """Parsed representation of an inbound MQTT topic."""

    raw: str
    kind: TopicKind
    device_id: int | None = None


class Subscription(msgspec.Struct, frozen=True):
    kind: TopicKind
    topic_filter: str
    qos: QOSLevel = QOSLevel.QOS_1


def _split_segments(path: str) -> tuple[str, ...]:
    if not path:
        return ()
    return tuple(segment for segment in path.split("/") if segment)


def topic_path(*segments: str | int) -> str:
    """Join segments into a topic path, dropping empty ones."""
    parts: list[str] = []
    for segment in segments:
        cleaned = str(segment).strip("/")
        if cleaned:
            parts.append(cleaned)
    if not parts:
        raise ValueError("topic path cannot be empty")
    return "/".join(parts)


def device_topic(device_id: int, kind: TopicKind) -> str:
    """e.g. devices/7/commands"""
    if device_id <= 0:
        raise ValueError(f"device id must be positive (got {device_id})")
    return topic_path(DEVICES_ROOT, device_id, kind.value)


def wildcard_topic(kind: TopicKind) -> str:
    """e.g. devices/+/commands/ack"""
    if kind is TopicKind.REGISTER_REQUEST:
        return registration_request_topic()
    return topic_path(DEVICES_ROOT, "+", kind.value)


def registration_request_topic() -> str:
    return topic_path(DEVICES_ROOT, REGISTER_SEGMENT, REGISTER_REQUEST_SEGMENT)


def registration_reply_topic(mac: str) -> str:
    """e.g. devices/register/AABBCCDDEEFF"""
    return topic_path(DEVICES_ROOT, REGISTER_SEGMENT, normalize_mac(mac))


def parse_device_id(segment: str) -> int | None:
    """Return the positive integer encoded in *segment*, or None."""
    if not segment.isascii() or not segment.isdigit():
        return None
    value = int(segment, 10)
    return value if 0 < value <= MAX_RECORD_ID else None


_DEVICE_KINDS = {tuple(kind.value.split("/")): kind for kind in TopicKind if kind is not TopicKind.REGISTER_REQUEST}


def parse_topic(topic_name: str) -> TopicRoute | None:
    """Parse an incoming MQTT topic into a TopicRoute.

    Returns None for anything outside the ``devices/`` tree, for unknown
    channels, and for per-device channels whose id is not a positive integer.
    """
    segments = _split_segments(topic_name)
    if len(segments) < 3 or segments[0] != DEVICES_ROOT:
        return None

    if segments[1:] == (REGISTER_SEGMENT, REGISTER_REQUEST_SEGMENT):
        return TopicRoute(raw=topic_name, kind=TopicKind.REGISTER_REQUEST)

    kind = _DEVICE_KINDS.get(segments[2:])
    if kind is None:
        return None
    device_id = parse_device_id(segments[1])
    if device_id is None:
        return None
    return TopicRoute(raw=topic_name, kind=kind, device_id=device_id)


# Inbound channels the bridge listens on; installed on every broker session.
MQTT_SUBSCRIPTIONS: tuple[Subscription, ...] = tuple(
    Subscription(kind=kind, topic_filter=wildcard_topic(kind), qos=QOSLevel.QOS_1)
    for kind in (
        TopicKind.COMMAND_ACK,
        TopicKind.HEARTBEAT,
        TopicKind.TELEMETRY,
        TopicKind.OTA_PROGRESS,
        TopicKind.REGISTER_REQUEST,
    )
)
