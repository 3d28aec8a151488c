"""Broker session ownership for the Fleet Bridge daemon.

One ``MqttTransport`` keeps a single aiomqtt session alive. While the session
is ready it is registered as the service's publisher; inbound messages are
routed into one bounded queue per topic kind, each drained by its own
consumer task so a slow handler for one kind cannot stall the others.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import aiomqtt
import tenacity
from sqlalchemy.exc import SQLAlchemyError
from transitions import Machine

from ..config.model import RuntimeConfig
from ..errors import BusNotConnectedError
from ..mqtt import build_mqtt_connect_properties, build_mqtt_properties
from ..mqtt.messages import QueuedPublish
from ..protocol.topics import TopicKind, TopicRoute
from ..services.runtime import message_payload
from ..state.context import BridgeState
from ..util.mqtt_helper import configure_tls_context

if TYPE_CHECKING:
    from ..services.runtime import BridgeService

logger = logging.getLogger("fleetbridge.mqtt")

InboundItem = tuple[TopicRoute, bytes]

RECONNECT_ERRORS: tuple[type[BaseException], ...] = (aiomqtt.MqttError, OSError, asyncio.TimeoutError)
RECONNECT_MAX_WAIT = 60.0
RECONNECT_JITTER = 2.0

# Per-message failures that are logged without tearing down the session.
CONSUMER_ERRORS: tuple[type[BaseException], ...] = (
    SQLAlchemyError,
    OSError,
    ValueError,
    TypeError,
    KeyError,
    RuntimeError,
)


class SessionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    READY = "ready"


_SESSION_TRANSITIONS: list[dict[str, Any]] = [
    {"trigger": "dial", "source": "*", "dest": SessionState.CONNECTING.value},
    {"trigger": "link_up", "source": SessionState.CONNECTING.value, "dest": SessionState.SUBSCRIBING.value},
    {"trigger": "subscribed", "source": SessionState.SUBSCRIBING.value, "dest": SessionState.READY.value},
    {"trigger": "link_down", "source": "*", "dest": SessionState.DISCONNECTED.value},
]


def _before_reconnect(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "Broker session lost after %d attempt(s) (%s); reconnecting in %.2fs",
        retry_state.attempt_number,
        exc,
        delay,
    )


class MqttTransport:
    """Owns the broker session and its inbound queues."""

    def __init__(
        self,
        config: RuntimeConfig,
        state: BridgeState,
        service: BridgeService,
    ) -> None:
        self.config = config
        self.state = state
        self.service = service
        self._client: aiomqtt.Client | None = None
        self.queues: dict[TopicKind, asyncio.Queue[InboundItem]] = {
            kind: asyncio.Queue(maxsize=config.mqtt_inbound_queue_limit) for kind in service.inbound_kinds
        }

        self.fsm_state = SessionState.DISCONNECTED.value
        self.machine = Machine(
            model=self,
            states=[member.value for member in SessionState],
            transitions=_SESSION_TRANSITIONS,
            initial=self.fsm_state,
            model_attribute="fsm_state",
            auto_transitions=False,
            ignore_invalid_triggers=True,
        )

    @property
    def session_ready(self) -> bool:
        return self._client is not None and self.fsm_state == SessionState.READY

    async def publish(self, message: QueuedPublish) -> None:
        """Publish on the live session; raises BusNotConnectedError otherwise."""
        client = self._client
        if client is None or self.fsm_state != SessionState.READY:
            raise BusNotConnectedError(f"no ready broker session (state={self.fsm_state})")
        await client.publish(
            message.topic_name,
            message.payload,
            qos=int(message.qos),
            retain=message.retain,
            properties=build_mqtt_properties(message),
        )

    async def run(self) -> None:
        """Hold a broker session open, reconnecting with jittered backoff."""
        tls_context = configure_tls_context(self.config)
        retryer = tenacity.AsyncRetrying(
            wait=tenacity.wait_exponential(multiplier=max(1, self.config.reconnect_delay), max=RECONNECT_MAX_WAIT)
            + tenacity.wait_random(0, RECONNECT_JITTER),
            retry=tenacity.retry_if_exception_type(RECONNECT_ERRORS),
            before_sleep=_before_reconnect,
            reraise=True,
        )

        try:
            async for attempt in retryer:
                with attempt:
                    try:
                        await self._open_session(tls_context)
                    except* RECONNECT_ERRORS as group:
                        for exc in group.exceptions:
                            logger.error("Broker session error: %s", exc)
                        # tenacity classifies the first error, not the group.
                        raise group.exceptions[0]
                    finally:
                        self._close_session()
        except asyncio.CancelledError:
            logger.info("MQTT transport cancelled; session closed.")
            self._close_session()
            raise

    def _client_options(self, tls_context: ssl.SSLContext | None) -> dict[str, Any]:
        return {
            "hostname": self.config.mqtt_host,
            "port": self.config.mqtt_port,
            "username": self.config.mqtt_user or None,
            "password": self.config.mqtt_pass or None,
            "identifier": self.config.mqtt_client_id,
            "keepalive": self.config.mqtt_keepalive,
            "clean_start": self.config.mqtt_clean,
            "tls_context": tls_context,
            "protocol": aiomqtt.ProtocolVersion.V5,
            "properties": build_mqtt_connect_properties(clean=self.config.mqtt_clean),
            "logger": logging.getLogger("fleetbridge.mqtt.client"),
        }

    async def _open_session(self, tls_context: ssl.SSLContext | None) -> None:
        if not self.config.mqtt_user:
            logger.warning("Connecting to the broker anonymously; set MQTT_USERNAME and MQTT_PASSWORD in production")

        self.trigger("dial")
        client = aiomqtt.Client(**self._client_options(tls_context))
        async with client:
            self.trigger("link_up")
            logger.info(
                "Broker session open on %s:%d as %s.",
                self.config.mqtt_host,
                self.config.mqtt_port,
                self.config.mqtt_client_id,
            )
            await self._install_subscriptions(client)

            self._client = client
            self.trigger("subscribed")
            self.state.mqtt_connected = True
            self.state.mqtt_connects += 1
            self.service.register_publisher(self.publish)

            async with asyncio.TaskGroup() as task_group:
                for kind, queue in self.queues.items():
                    task_group.create_task(self._drain(kind, queue), name=f"mqtt-consumer-{kind.value}")
                task_group.create_task(self._receive(client), name="mqtt-receiver")

    def _close_session(self) -> None:
        self._client = None
        self.state.mqtt_connected = False
        self.service.detach_publisher()
        if self.fsm_state != SessionState.DISCONNECTED:
            self.trigger("link_down")

    async def _install_subscriptions(self, client: aiomqtt.Client) -> None:
        subscriptions = self.service.subscriptions
        for subscription in subscriptions:
            await client.subscribe(subscription.topic_filter, qos=int(subscription.qos))
            logger.debug("Subscribed %s (qos=%d)", subscription.topic_filter, int(subscription.qos))
        logger.info("Listening on %d device topic filters.", len(subscriptions))

    async def _receive(self, client: aiomqtt.Client) -> None:
        try:
            async for message in client.messages:
                route = self.service.route_message(message)
                if route is not None:
                    self.enqueue_inbound(route, message_payload(message))
        except aiomqtt.MqttError as exc:
            logger.warning("Broker stopped delivering messages: %s", exc)
            raise

    def enqueue_inbound(self, route: TopicRoute, payload: bytes) -> bool:
        """Queue one message for its consumer; False when it was dropped."""
        queue = self.queues.get(route.kind)
        if queue is None:
            self.state.record_drop("unrouted_topic")
            return False
        try:
            queue.put_nowait((route, payload))
        except asyncio.QueueFull:
            self.state.record_drop(f"{route.kind.value}_queue_full")
            logger.warning("%s queue at capacity (%d); dropped message on %s", route.kind.value, queue.maxsize, route.raw)
            return False
        return True

    async def _drain(self, kind: TopicKind, queue: asyncio.Queue[InboundItem]) -> None:
        while True:
            route, payload = await queue.get()
            try:
                await self.service.handle_route(route, payload)
            except CONSUMER_ERRORS as exc:
                logger.exception("Failed to apply %s message from %s: %s", kind.value, route.raw, exc)
            finally:
                queue.task_done()
