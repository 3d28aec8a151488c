"""MQTT v5 property builders used by the transport."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

if TYPE_CHECKING:
    from .messages import QueuedPublish

__all__ = [
    "build_mqtt_connect_properties",
    "build_mqtt_properties",
]

# How long the broker keeps a non-clean session after the bridge drops off.
PERSISTENT_SESSION_EXPIRY_SECONDS = 3600

_UTF8_PAYLOAD_FORMAT = 1


def build_mqtt_properties(message: QueuedPublish) -> Properties | None:
    """PUBLISH properties for *message*, or None when it carries no metadata."""
    values: list[tuple[str, Any]] = []
    if message.content_type:
        values.append(("ContentType", message.content_type))
        if message.content_type.startswith("application/json"):
            values.append(("PayloadFormatIndicator", _UTF8_PAYLOAD_FORMAT))
    if message.message_expiry_interval is not None:
        values.append(("MessageExpiryInterval", int(message.message_expiry_interval)))
    if message.correlation_data is not None:
        values.append(("CorrelationData", message.correlation_data))
    if message.user_properties:
        values.append(("UserProperty", list(message.user_properties)))

    if not values:
        return None

    props = Properties(PacketTypes.PUBLISH)
    for name, value in values:
        setattr(props, name, value)
    return props


def build_mqtt_connect_properties(*, clean: bool = True) -> Properties:
    props = Properties(PacketTypes.CONNECT)
    props.SessionExpiryInterval = 0 if clean else PERSISTENT_SESSION_EXPIRY_SECONDS
    # Ask for reason strings on refused operations; they end up in the logs.
    props.RequestProblemInformation = 1
    return props
