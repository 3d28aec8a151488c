"""Outbound MQTT message model."""

from __future__ import annotations

import msgspec

from ..const import MQTT_JSON_CONTENT_TYPE
from ..protocol.topics import QOSLevel

UserProperty = tuple[str, str]


class QueuedPublish(msgspec.Struct, frozen=True):
    """A publish request handed to the transport."""

    topic_name: str
    payload: bytes
    qos: QOSLevel = QOSLevel.QOS_1
    retain: bool = False
    content_type: str | None = MQTT_JSON_CONTENT_TYPE
    message_expiry_interval: int | None = None
    correlation_data: bytes | None = None
    user_properties: tuple[UserProperty, ...] = ()
