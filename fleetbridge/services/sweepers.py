"""Periodic timeout sweepers.

Each sweeper runs one tick immediately and then every ``interval`` seconds
until its own stop event is set. A failing tick is logged and counted; the
loop keeps going so a transient store outage never ends liveness enforcement.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from ..config.model import RuntimeConfig
from ..state.context import BridgeState
from ..store.base import CommandLedger, DeviceDirectory

logger = logging.getLogger("fleetbridge.sweepers")

# Per-tick failures that are logged and survived.
SWEEP_ERRORS: tuple[type[BaseException], ...] = (
    SQLAlchemyError,
    OSError,
    ValueError,
    TypeError,
    KeyError,
    RuntimeError,
)


class PeriodicSweeper(ABC):
    """Base class: subclasses implement :meth:`sweep_once`."""

    name = "sweeper"

    def __init__(self, state: BridgeState, interval: float) -> None:
        if interval <= 0:
            raise ValueError(f"{self.name} interval must be positive (got {interval})")
        self.state = state
        self.interval = interval
        self._stop_event = asyncio.Event()

    @abstractmethod
    async def sweep_once(self) -> int:
        """Apply one sweep and return the number of affected rows."""

    async def tick(self) -> int:
        """Run one sweep, recording the outcome; never raises SWEEP_ERRORS."""
        try:
            affected = await self.sweep_once()
        except SWEEP_ERRORS as exc:
            self.state.record_sweep_error(self.name, exc)
            logger.exception("%s sweep failed: %s", self.name, exc)
            return 0
        self.state.record_sweep(self.name, affected)
        if affected:
            logger.info("%s sweep affected %d row(s)", self.name, affected)
        return affected

    async def run(self) -> None:
        logger.info("%s sweeper started (interval=%.3fs)", self.name, self.interval)
        try:
            while not self._stop_event.is_set():
                await self.tick()
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
        finally:
            logger.info("%s sweeper stopped", self.name)

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()


class CommandTimeoutSweeper(PeriodicSweeper):
    """SENT commands without an ack past the ack timeout become TIMEOUT."""

    name = "command-timeout"

    def __init__(self, config: RuntimeConfig, state: BridgeState, ledger: CommandLedger) -> None:
        super().__init__(state, config.command_timeout_sweep_interval_seconds)
        self.ledger = ledger
        self.ack_timeout = timedelta(milliseconds=config.command_ack_timeout_ms)
        self.batch_limit = config.sweep_batch_limit

    async def sweep_once(self) -> int:
        expired = await self.ledger.expire_commands(self.ack_timeout, limit=self.batch_limit)
        if expired:
            logger.debug("Timed out commands: %s", ", ".join(str(command_id) for command_id in expired))
        return len(expired)


class DeviceOfflineSweeper(PeriodicSweeper):
    """Online devices not seen within the threshold are marked offline."""

    name = "device-offline"

    def __init__(self, config: RuntimeConfig, state: BridgeState, directory: DeviceDirectory) -> None:
        super().__init__(state, config.device_offline_sweep_interval_seconds)
        self.directory = directory
        self.threshold = timedelta(milliseconds=config.device_offline_threshold_ms)

    async def sweep_once(self) -> int:
        return await self.directory.mark_stale_offline(self.threshold)


class OtaTimeoutSweeper(PeriodicSweeper):
    """Stalled SENT/DOWNLOADING jobs become TIMEOUT along with their command."""

    name = "ota-timeout"

    def __init__(self, config: RuntimeConfig, state: BridgeState, ledger: CommandLedger) -> None:
        super().__init__(state, config.ota_sweep_interval_seconds)
        self.ledger = ledger
        self.ota_timeout = timedelta(milliseconds=config.ota_timeout_ms)
        self.batch_limit = config.sweep_batch_limit

    async def sweep_once(self) -> int:
        outcome = await self.ledger.expire_ota_jobs(self.ota_timeout, limit=self.batch_limit)
        if outcome.command_ids:
            logger.info(
                "OTA timeout cascaded to command(s) %s",
                ", ".join(str(command_id) for command_id in outcome.command_ids),
            )
        return len(outcome.job_ids)


__all__ = [
    "CommandTimeoutSweeper",
    "DeviceOfflineSweeper",
    "OtaTimeoutSweeper",
    "PeriodicSweeper",
    "SWEEP_ERRORS",
]
