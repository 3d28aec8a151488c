"""Wire-level contract between the bridge and devices: topics and payloads."""

from .topics import (
    MQTT_SUBSCRIPTIONS,
    QOSLevel,
    Subscription,
    TopicKind,
    TopicRoute,
    device_topic,
    parse_topic,
    registration_reply_topic,
    topic_path,
    wildcard_topic,
)

__all__ = [
    "MQTT_SUBSCRIPTIONS",
    "QOSLevel",
    "Subscription",
    "TopicKind",
    "TopicRoute",
    "device_topic",
    "parse_topic",
    "registration_reply_topic",
    "topic_path",
    "wildcard_topic",
]
