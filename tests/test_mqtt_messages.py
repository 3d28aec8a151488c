"""Tests for MQTT v5 property construction."""

from __future__ import annotations

from fleetbridge.mqtt import build_mqtt_connect_properties, build_mqtt_properties
from fleetbridge.mqtt.messages import QueuedPublish
from fleetbridge.protocol.topics import QOSLevel


def test_json_publish_carries_content_type_and_correlation() -> None:
    message = QueuedPublish(
        topic_name="devices/7/commands",
        payload=b"{}",
        correlation_data=b"0f1e2d3c",
        user_properties=(("source", "USER"),),
    )

    props = build_mqtt_properties(message)

    assert props is not None
    assert props.ContentType == "application/json"
    assert props.PayloadFormatIndicator == 1
    assert props.CorrelationData == b"0f1e2d3c"
    assert ("source", "USER") in list(props.UserProperty)
    assert message.qos is QOSLevel.QOS_1
    assert message.retain is False


def test_publish_without_metadata_has_no_properties() -> None:
    message = QueuedPublish(topic_name="devices/7/commands", payload=b"\x00", content_type=None)

    assert build_mqtt_properties(message) is None


def test_connect_properties_follow_clean_flag() -> None:
    assert build_mqtt_connect_properties(clean=True).SessionExpiryInterval == 0
    assert build_mqtt_connect_properties(clean=False).SessionExpiryInterval == 3600
