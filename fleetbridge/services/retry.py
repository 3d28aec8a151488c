"""Bounded publish retry built on tenacity.

The schedule is a fixed list of delays indexed by the number of failures so
far; once the list is exhausted its last delay is reused. Only transport
failures are retried, anything else propagates on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import aiomqtt
import msgspec
import tenacity
from tenacity.wait import wait_base

from ..config.model import RuntimeConfig
from ..errors import BusNotConnectedError

logger = logging.getLogger("fleetbridge.retry")

T = TypeVar("T")

SleepCallable = Callable[[float], Awaitable[None]]
RetryHook = Callable[[int, BaseException, float], None]

TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    BusNotConnectedError,
    aiomqtt.MqttError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


def is_transport_error(exc: BaseException) -> bool:
    """True for not-connected, connection reset and timeout failures."""
    return isinstance(exc, TRANSPORT_ERRORS)


class RetryPolicy(msgspec.Struct, frozen=True):
    """``retries`` extra attempts after the first, waiting ``delays`` seconds."""

    retries: int
    delays: tuple[float, ...] = ()

    @classmethod
    def from_config(cls, config: RuntimeConfig) -> RetryPolicy:
        return cls(retries=config.publish_retries, delays=config.publish_backoff_seconds)

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def delay_for(self, failures: int) -> float:
        if not self.delays or failures <= 0:
            return 0.0
        return self.delays[min(failures - 1, len(self.delays) - 1)]


class _ScheduleWait(wait_base):
    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy

    def __call__(self, retry_state: tenacity.RetryCallState) -> float:
        return self.policy.delay_for(retry_state.attempt_number)


class _RetryCallbacks:
    __slots__ = ("label", "on_retry")

    def __init__(self, label: str, on_retry: RetryHook | None) -> None:
        self.label = label
        self.on_retry = on_retry

    def before_sleep(self, retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s failed (attempt %d: %s); retrying in %.2fs",
            self.label,
            retry_state.attempt_number,
            exc.__class__.__name__ if exc else "unknown",
            delay,
        )
        if self.on_retry is not None and exc is not None:
            self.on_retry(retry_state.attempt_number, exc, delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    should_retry: Callable[[BaseException], bool] = is_transport_error,
    sleep: SleepCallable = asyncio.sleep,
    on_retry: RetryHook | None = None,
    label: str = "publish",
) -> T:
    """Await *operation* until it succeeds or *policy* is exhausted.

    The last exception is re-raised unchanged when retries run out or when
    *should_retry* rejects it.
    """
    callbacks = _RetryCallbacks(label, on_retry)
    retryer = tenacity.AsyncRetrying(
        stop=tenacity.stop_after_attempt(policy.max_attempts),
        wait=_ScheduleWait(policy),
        retry=tenacity.retry_if_exception(should_retry),
        before_sleep=callbacks.before_sleep,
        sleep=sleep,
        reraise=True,
    )

    async for attempt in retryer:
        with attempt:
            result = await operation()
    return result
