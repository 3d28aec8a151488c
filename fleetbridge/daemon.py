#!/usr/bin/env python3
"""Fleet Bridge daemon entry point.

The daemon owns the long-running pieces of the bridge and keeps each one
alive under its own supervisor:

    mqtt-link            broker session and inbound consumers
    command-timeout      SENT commands with no ack -> TIMEOUT
    device-offline       silent devices -> offline
    ota-timeout          stalled OTA jobs -> TIMEOUT (and their commands)
    prometheus-exporter  only when METRICS_ENABLED is set
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from collections.abc import Awaitable, Callable
from typing import NoReturn

import msgspec
import tenacity
import uvloop

from .config.logging import configure_logging
from .config.settings import RuntimeConfig, load_runtime_config
from .const import (
    SUPERVISOR_DEFAULT_MAX_BACKOFF,
    SUPERVISOR_DEFAULT_MIN_BACKOFF,
    SUPERVISOR_DEFAULT_RESTART_INTERVAL,
    SUPERVISOR_HEALTHY_RUN_SECONDS,
    SUPERVISOR_PROMETHEUS_MAX_RESTARTS,
    SUPERVISOR_PROMETHEUS_RESTART_INTERVAL,
    SUPERVISOR_SWEEPER_MAX_BACKOFF,
)
from .errors import ConfigurationError
from .metrics import PrometheusExporter
from .services.runtime import BridgeService
from .services.sweepers import CommandTimeoutSweeper, DeviceOfflineSweeper, OtaTimeoutSweeper, PeriodicSweeper
from .state.context import BridgeState, create_bridge_state
from .store.database import create_engine, create_schema, create_session_factory
from .transport import MqttTransport

logger = logging.getLogger("fleetbridge")

# Never restarted: these mean the process itself is going away.
_NEVER_RESTART: tuple[type[BaseException], ...] = (
    asyncio.CancelledError,
    SystemExit,
    KeyboardInterrupt,
    GeneratorExit,
)


class SupervisedTaskSpec(msgspec.Struct):
    """Restart policy and factory for one supervised task."""

    name: str
    factory: Callable[[], Awaitable[None]]
    fatal_exceptions: tuple[type[BaseException], ...] = ()
    max_restarts: int | None = None
    restart_interval: float = SUPERVISOR_DEFAULT_RESTART_INTERVAL
    min_backoff: float = SUPERVISOR_DEFAULT_MIN_BACKOFF
    max_backoff: float = SUPERVISOR_DEFAULT_MAX_BACKOFF


class SupervisorHooks:
    """tenacity ``before_sleep`` hook: logs the crash and counts the restart."""

    __slots__ = ("name", "log", "state")

    def __init__(self, name: str, log: logging.Logger, state: BridgeState | None) -> None:
        self.name = name
        self.log = log
        self.state = state

    def before_sleep(self, retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self.log.error("%s crashed (%s); restarting in %.1fs", self.name, exc, delay)
        if self.state is not None and exc is not None:
            self.state.record_supervisor_failure(self.name, backoff=delay, exc=exc)


class TaskSupervisor:
    """Runs one task factory, restarting it with exponential backoff.

    A clean return ends supervision. A fatal exception, or running out of
    ``max_restarts``, is recorded and re-raised so the daemon's task group
    shuts down. A task that stayed up longer than its restart interval
    before failing gets a fresh restart budget.
    """

    def __init__(self, spec: SupervisedTaskSpec, state: BridgeState) -> None:
        self.spec = spec
        self.state = state
        self.log = logging.getLogger("fleetbridge.supervisor")
        self.hooks = SupervisorHooks(spec.name, self.log, state)

    def _retryer(self) -> tenacity.AsyncRetrying:
        spec = self.spec
        stop = tenacity.stop_never if spec.max_restarts is None else tenacity.stop_after_attempt(spec.max_restarts + 1)
        return tenacity.AsyncRetrying(
            wait=tenacity.wait_exponential(multiplier=spec.min_backoff, max=spec.max_backoff),
            retry=tenacity.retry_if_not_exception_type(_NEVER_RESTART + spec.fatal_exceptions),
            stop=stop,
            before_sleep=self.hooks.before_sleep,
            reraise=True,
        )

    def _give_up(self, exc: BaseException, reason: str) -> None:
        self.log.critical("%s stopped for good (%s): %s", self.spec.name, reason, exc)
        self.state.record_supervisor_failure(self.spec.name, backoff=0.0, exc=exc, fatal=True)

    async def run(self) -> None:
        name = self.spec.name
        while True:
            started = 0.0
            try:
                async for attempt in self._retryer():
                    with attempt:
                        started = time.monotonic()
                        await self.spec.factory()
            except asyncio.CancelledError:
                self.log.debug("%s supervisor cancelled", name)
                raise
            except self.spec.fatal_exceptions as exc:
                self._give_up(exc, "fatal error")
                raise
            except Exception as exc:
                uptime = time.monotonic() - started if started else 0.0
                if uptime > max(SUPERVISOR_HEALTHY_RUN_SECONDS, self.spec.restart_interval):
                    self.log.info("%s ran %.0fs before failing; restart budget reset", name, uptime)
                    self.state.mark_supervisor_healthy(name)
                    continue
                self._give_up(exc, "restart budget exhausted")
                raise
            self.log.warning("%s returned; not restarting", name)
            self.state.mark_supervisor_healthy(name)
            return


class BridgeDaemon:
    """Builds the bridge from configuration and runs it until cancelled.

    Attributes:
        config: Runtime configuration loaded from the environment.
        state: Shared runtime counters for all components.
        service: BridgeService handling inbound routing and caller requests.
        transport: Broker session owner.
        sweepers: Timeout sweepers for commands, devices and OTA jobs.
        exporter: Prometheus exporter, created only when metrics are enabled.
    """

    def __init__(self, config: RuntimeConfig):
        self.config = config
        self.state = create_bridge_state(config)
        self.engine = create_engine(config)
        self.session_factory = create_session_factory(self.engine)
        self.service = BridgeService.from_session_factory(config, self.state, self.session_factory)
        self.transport = MqttTransport(config, self.state, self.service)

        ledger = self.service.commands.ledger
        self.sweepers: list[PeriodicSweeper] = [
            CommandTimeoutSweeper(config, self.state, ledger),
            DeviceOfflineSweeper(config, self.state, self.service.commands.directory),
            OtaTimeoutSweeper(config, self.state, ledger),
        ]
        self.exporter: PrometheusExporter | None = None

    def supervised_tasks(self) -> list[SupervisedTaskSpec]:
        specs = [SupervisedTaskSpec(name="mqtt-link", factory=self.transport.run)]
        specs.extend(
            SupervisedTaskSpec(name=sweeper.name, factory=sweeper.run, max_backoff=SUPERVISOR_SWEEPER_MAX_BACKOFF)
            for sweeper in self.sweepers
        )

        if self.config.metrics_enabled:
            self.exporter = PrometheusExporter(self.state, self.config.metrics_host, self.config.metrics_port)
            specs.append(
                SupervisedTaskSpec(
                    name="prometheus-exporter",
                    factory=self.exporter.run,
                    max_restarts=SUPERVISOR_PROMETHEUS_MAX_RESTARTS,
                    restart_interval=SUPERVISOR_PROMETHEUS_RESTART_INTERVAL,
                )
            )
        return specs

    async def run(self) -> None:
        specs = self.supervised_tasks()
        try:
            if self.config.database_create_schema:
                await create_schema(self.engine)
            async with asyncio.TaskGroup() as task_group:
                for spec in specs:
                    task_group.create_task(TaskSupervisor(spec, self.state).run(), name=f"supervise-{spec.name}")
        except* asyncio.CancelledError:
            logger.info("Daemon cancelled; shutting down.")
        except* Exception as group:
            for exc in group.exceptions:
                logger.critical("Supervised task ended the daemon: %s", exc, exc_info=exc)
            raise
        finally:
            for sweeper in self.sweepers:
                sweeper.stop()
            await self.engine.dispose()
            logger.info("Fleet Bridge daemon stopped.")


def _run_until_exit(config: RuntimeConfig) -> int:
    try:
        asyncio.run(BridgeDaemon(config).run(), loop_factory=uvloop.new_event_loop)
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting.")
    except ExceptionGroup as group:
        for exc in group.exceptions:
            logger.critical("Fatal error in supervised task: %s", exc, exc_info=exc)
        return 1
    except (RuntimeError, OSError) as exc:
        logger.critical("Daemon aborted: %s", exc, exc_info=True)
        return 1
    return 0


def main() -> NoReturn:  # pragma: no cover
    try:
        config = load_runtime_config()
    except ConfigurationError as exc:
        logging.basicConfig(level=logging.ERROR)
        logger.critical("%s", exc)
        sys.exit(1)

    configure_logging(config)
    logger.info(
        "Starting Fleet Bridge daemon. MQTT: %s:%d (tls=%s) client=%s",
        config.mqtt_host,
        config.mqtt_port,
        config.mqtt_tls,
        config.mqtt_client_id,
    )
    sys.exit(_run_until_exit(config))


if __name__ == "__main__":
    main()
