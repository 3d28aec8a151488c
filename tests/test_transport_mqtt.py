"""Tests for the MQTT transport session handling."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import aiomqtt
import pytest

from fleetbridge.errors import BusNotConnectedError
from fleetbridge.mqtt.messages import QueuedPublish
from fleetbridge.protocol.topics import TopicKind, TopicRoute
from fleetbridge.transport.mqtt import MqttTransport, SessionState
from tests.mocks import DEVICE_ID, DEVICE_KEY, json_bytes, make_message


class FakeClient:
    """Minimal async stand-in for ``aiomqtt.Client``."""

    instances: list[FakeClient] = []

    def __init__(self, inbound: list[Any] | None = None, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.inbound = inbound or []
        self.subscriptions: list[tuple[str, int]] = []
        self.published: list[tuple[str, bytes, int, bool, Any]] = []
        self.closed = False
        FakeClient.instances.append(self)

    async def __aenter__(self) -> FakeClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.closed = True

    async def subscribe(self, topic: str, qos: int = 0) -> None:
        self.subscriptions.append((topic, qos))

    async def publish(self, topic: str, payload: bytes, qos: int = 0, retain: bool = False, properties: Any = None) -> None:
        self.published.append((topic, payload, qos, retain, properties))

    @property
    def messages(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        for message in self.inbound:
            yield message
        await asyncio.Event().wait()


@pytest.fixture()
def transport(runtime_config, runtime_state, bridge_service) -> MqttTransport:
    FakeClient.instances = []
    return MqttTransport(runtime_config, runtime_state, bridge_service)


def _mark_ready(transport: MqttTransport, client: FakeClient) -> None:
    transport.trigger("dial")
    transport.trigger("link_up")
    transport._client = client  # type: ignore[assignment]
    transport.trigger("subscribed")


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.mark.asyncio
async def test_publish_requires_ready_session(transport) -> None:
    message = QueuedPublish(topic_name="devices/7/commands", payload=b"{}")

    assert transport.session_ready is False
    with pytest.raises(BusNotConnectedError):
        await transport.publish(message)

    client = FakeClient()
    _mark_ready(transport, client)
    await transport.publish(message)

    topic, payload, qos, retain, properties = client.published[0]
    assert (topic, payload, qos, retain) == ("devices/7/commands", b"{}", 1, False)
    assert properties.ContentType == "application/json"


def test_invalid_triggers_are_ignored(transport) -> None:
    transport.trigger("subscribed")
    assert transport.fsm_state == SessionState.DISCONNECTED

    transport.trigger("dial")
    transport.trigger("subscribed")
    assert transport.fsm_state == SessionState.CONNECTING


def test_enqueue_inbound_drops_when_queue_full(transport, runtime_state) -> None:
    route = TopicRoute(raw="devices/7/heartbeat", kind=TopicKind.HEARTBEAT, device_id=7)

    accepted = [transport.enqueue_inbound(route, b"{}") for _ in range(5)]

    assert accepted == [True, True, True, True, False]
    assert runtime_state.inbound_drops["heartbeat_queue_full"] == 1
    assert transport.queues[TopicKind.TELEMETRY].empty()


def test_enqueue_inbound_rejects_kind_without_queue(transport, runtime_state) -> None:
    route = TopicRoute(raw="devices/7/commands", kind=TopicKind.COMMANDS, device_id=7)

    assert transport.enqueue_inbound(route, b"{}") is False
    assert runtime_state.inbound_drops["unrouted_topic"] == 1


@pytest.mark.asyncio
async def test_consumer_survives_bad_payloads(transport, runtime_state, directory) -> None:
    queue = transport.queues[TopicKind.HEARTBEAT]
    route = TopicRoute(raw=f"devices/{DEVICE_ID}/heartbeat", kind=TopicKind.HEARTBEAT, device_id=DEVICE_ID)
    queue.put_nowait((route, b"garbage"))
    queue.put_nowait((route, json_bytes({"deviceKey": DEVICE_KEY})))

    task = asyncio.create_task(transport._drain(TopicKind.HEARTBEAT, queue))
    await asyncio.wait_for(queue.join(), timeout=2.0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert runtime_state.inbound_drops["heartbeat_invalid"] == 1
    assert (await directory.get_device(DEVICE_ID)).online is True


@pytest.mark.asyncio
async def test_session_subscribes_routes_and_cleans_up(transport, runtime_state, bridge_service, monkeypatch) -> None:
    inbound = [
        make_message(f"devices/{DEVICE_ID}/heartbeat", json_bytes({"deviceKey": DEVICE_KEY})),
        make_message("devices/not-a-device/heartbeat", b"{}"),
    ]
    monkeypatch.setattr(aiomqtt, "Client", lambda **kwargs: FakeClient(inbound, **kwargs))

    task = asyncio.create_task(transport.run())
    await _wait_for(lambda: runtime_state.heartbeats_accepted == 1)

    client = FakeClient.instances[0]
    assert transport.session_ready is True
    assert runtime_state.mqtt_connected is True
    assert runtime_state.mqtt_connects == 1
    assert {topic for topic, _ in client.subscriptions} == {
        sub.topic_filter for sub in bridge_service.subscriptions
    }
    assert all(qos == 1 for _, qos in client.subscriptions)
    assert client.kwargs["identifier"] == "fleetbridge-test"
    assert runtime_state.inbound_drops["unrouted_topic"] == 1

    await bridge_service.publish(QueuedPublish(topic_name="devices/7/commands", payload=b"{}"))
    assert client.published[0][0] == "devices/7/commands"

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert client.closed is True
    assert transport.session_ready is False
    assert transport.fsm_state == SessionState.DISCONNECTED
    assert runtime_state.mqtt_connected is False
    with pytest.raises(BusNotConnectedError):
        await bridge_service.publish(QueuedPublish(topic_name="devices/7/commands", payload=b"{}"))
