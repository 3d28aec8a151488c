"""Tests for MQTT topic helpers."""

from __future__ import annotations

import pytest

from fleetbridge.protocol.topics import (
    MQTT_SUBSCRIPTIONS,
    QOSLevel,
    TopicKind,
    device_topic,
    parse_topic,
    registration_reply_topic,
    registration_request_topic,
    topic_path,
    wildcard_topic,
)


def test_device_topics() -> None:
    assert device_topic(7, TopicKind.COMMANDS) == "devices/7/commands"
    assert device_topic(7, TopicKind.COMMAND_ACK) == "devices/7/commands/ack"
    assert device_topic(7, TopicKind.OTA_PROGRESS) == "devices/7/ota/progress"

    with pytest.raises(ValueError):
        device_topic(0, TopicKind.COMMANDS)


def test_registration_topics() -> None:
    assert registration_request_topic() == "devices/register/request"
    assert registration_reply_topic("aa:bb:cc:dd:ee:ff") == "devices/register/AABBCCDDEEFF"


def test_topic_path_drops_empty_segments() -> None:
    assert topic_path("devices", "", "/7/", "heartbeat") == "devices/7/heartbeat"
    with pytest.raises(ValueError):
        topic_path("", "/")


@pytest.mark.parametrize(
    ("topic", "kind", "device_id"),
    [
        ("devices/7/commands/ack", TopicKind.COMMAND_ACK, 7),
        ("devices/12/heartbeat", TopicKind.HEARTBEAT, 12),
        ("devices/3/telemetry", TopicKind.TELEMETRY, 3),
        ("devices/99/ota/progress", TopicKind.OTA_PROGRESS, 99),
        ("devices/register/request", TopicKind.REGISTER_REQUEST, None),
    ],
)
def test_parse_topic_known_channels(topic: str, kind: TopicKind, device_id: int | None) -> None:
    route = parse_topic(topic)

    assert route is not None
    assert route.kind is kind
    assert route.device_id == device_id
    assert route.raw == topic


@pytest.mark.parametrize(
    "topic",
    [
        "devices/abc/heartbeat",
        "devices/0/heartbeat",
        "devices/-4/telemetry",
        "devices/2147483648/telemetry",
        "devices/18446744073709551615/heartbeat",
        "devices/7/unknown",
        "devices/7",
        "homes/7/heartbeat",
        "devices/register/AABBCCDDEEFF",
        "devices/７/heartbeat",
        "",
    ],
)
def test_parse_topic_rejects_unroutable(topic: str) -> None:
    assert parse_topic(topic) is None


def test_subscriptions_cover_inbound_channels_at_qos1() -> None:
    filters = {sub.topic_filter for sub in MQTT_SUBSCRIPTIONS}

    assert filters == {
        "devices/+/commands/ack",
        "devices/+/heartbeat",
        "devices/+/telemetry",
        "devices/+/ota/progress",
        "devices/register/request",
    }
    assert all(sub.qos is QOSLevel.QOS_1 for sub in MQTT_SUBSCRIPTIONS)
    assert wildcard_topic(TopicKind.REGISTER_REQUEST) == "devices/register/request"
