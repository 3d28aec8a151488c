"""Base plumbing shared by the service components."""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable

from ..config.model import RuntimeConfig
from ..errors import BusNotConnectedError
from ..mqtt.messages import QueuedPublish
from ..state.context import BridgeState
from .retry import RetryPolicy, SleepCallable, with_retry

PublishCallable = Callable[[QueuedPublish], Awaitable[None]]


async def publisher_not_ready(message: QueuedPublish) -> None:
    """Placeholder publisher used until the MQTT transport registers itself."""
    raise BusNotConnectedError(f"MQTT transport not attached; cannot publish to {message.topic_name}")


class BridgeComponent:
    """Holds the collaborators every component needs and the retrying publish."""

    def __init__(
        self,
        config: RuntimeConfig,
        state: BridgeState,
        publish: PublishCallable,
        *,
        sleep: SleepCallable = asyncio.sleep,
    ) -> None:
        self.config = config
        self.state = state
        self._publish = publish
        self._sleep = sleep
        self.retry_policy = RetryPolicy.from_config(config)

    async def publish_with_retry(self, message: QueuedPublish, *, label: str = "publish") -> None:
        await with_retry(
            functools.partial(self._publish_once, message),
            self.retry_policy,
            sleep=self._sleep,
            on_retry=self._count_retry,
            label=label,
        )

    async def _publish_once(self, message: QueuedPublish) -> None:
        self.state.publish_attempts += 1
        await self._publish(message)

    def _count_retry(self, attempt: int, exc: BaseException, delay: float) -> None:
        self.state.publish_retries += 1


__all__ = ["BridgeComponent", "PublishCallable", "publisher_not_ready"]
