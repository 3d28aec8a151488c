"""Runtime state container for the Fleet Bridge daemon.

Holds in-process counters only; every durable fact lives in the ledger.
Counters are mutated from the event loop thread, so no locking is needed.
"""

from __future__ import annotations

import time
from typing import Any

import msgspec

from ..config.model import RuntimeConfig


def _counter_factory() -> dict[str, int]:
    return {}


def _sweep_stats_factory() -> dict[str, SweepStats]:
    return {}


def _supervisor_stats_factory() -> dict[str, SupervisorStats]:
    return {}


class SupervisorStats(msgspec.Struct):
    """Task supervisor statistics."""

    restarts: int = 0
    last_failure_unix: float = 0.0
    last_exception: str | None = None
    backoff_seconds: float = 0.0
    fatal: bool = False

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class SweepStats(msgspec.Struct):
    """Per-sweeper tick statistics."""

    runs: int = 0
    affected: int = 0
    errors: int = 0
    last_run_unix: float = 0.0
    last_error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class BridgeState(msgspec.Struct):
    """Aggregated bridge counters exposed through metrics."""

    mqtt_connected: bool = False
    mqtt_connects: int = 0
    mqtt_inbound_queue_limit: int = 0

    commands_created: int = 0
    commands_sent: int = 0
    commands_failed: int = 0
    commands_dispatch_ignored: int = 0
    publish_attempts: int = 0
    publish_retries: int = 0

    acks_applied: int = 0
    acks_ignored: int = 0

    heartbeats_accepted: int = 0
    telemetry_accepted: int = 0
    alarms_created: int = 0
    alarms_suppressed: int = 0

    ota_triggered: int = 0
    ota_progress_applied: int = 0
    ota_progress_ignored: int = 0

    registration_requests: int = 0
    credentials_sent: int = 0

    inbound_messages: dict[str, int] = msgspec.field(default_factory=_counter_factory)
    inbound_drops: dict[str, int] = msgspec.field(default_factory=_counter_factory)
    sweeps: dict[str, SweepStats] = msgspec.field(default_factory=_sweep_stats_factory)
    supervisors: dict[str, SupervisorStats] = msgspec.field(default_factory=_supervisor_stats_factory)

    def configure(self, config: RuntimeConfig) -> None:
        self.mqtt_inbound_queue_limit = config.mqtt_inbound_queue_limit

    def record_inbound(self, kind: str) -> None:
        self.inbound_messages[kind] = self.inbound_messages.get(kind, 0) + 1

    def record_drop(self, reason: str) -> None:
        self.inbound_drops[reason] = self.inbound_drops.get(reason, 0) + 1

    def record_sweep(self, name: str, affected: int) -> None:
        stats = self.sweeps.setdefault(name, SweepStats())
        stats.runs += 1
        stats.affected += affected
        stats.last_run_unix = time.time()

    def record_sweep_error(self, name: str, exc: BaseException) -> None:
        stats = self.sweeps.setdefault(name, SweepStats())
        stats.runs += 1
        stats.errors += 1
        stats.last_run_unix = time.time()
        stats.last_error = f"{exc.__class__.__name__}: {exc}"

    def record_supervisor_failure(
        self,
        name: str,
        *,
        backoff: float,
        exc: BaseException,
        fatal: bool = False,
    ) -> None:
        stats = self.supervisors.setdefault(name, SupervisorStats())
        stats.restarts += 1
        stats.last_failure_unix = time.time()
        stats.last_exception = f"{exc.__class__.__name__}: {exc}"
        stats.backoff_seconds = backoff
        stats.fatal = fatal

    def mark_supervisor_healthy(self, name: str) -> None:
        stats = self.supervisors.get(name)
        if stats is None:
            return
        stats.backoff_seconds = 0.0
        stats.fatal = False

    def build_metrics_snapshot(self) -> dict[str, Any]:
        return {
            "mqtt": {
                "connected": self.mqtt_connected,
                "connects": self.mqtt_connects,
                "inbound_queue_limit": self.mqtt_inbound_queue_limit,
                "inbound_messages": dict(self.inbound_messages),
                "inbound_drops": dict(self.inbound_drops),
            },
            "commands": {
                "created": self.commands_created,
                "sent": self.commands_sent,
                "failed": self.commands_failed,
                "dispatch_ignored": self.commands_dispatch_ignored,
                "publish_attempts": self.publish_attempts,
                "publish_retries": self.publish_retries,
                "acks_applied": self.acks_applied,
                "acks_ignored": self.acks_ignored,
            },
            "devices": {
                "heartbeats_accepted": self.heartbeats_accepted,
                "telemetry_accepted": self.telemetry_accepted,
                "registration_requests": self.registration_requests,
                "credentials_sent": self.credentials_sent,
            },
            "alarms": {
                "created": self.alarms_created,
                "suppressed": self.alarms_suppressed,
            },
            "ota": {
                "triggered": self.ota_triggered,
                "progress_applied": self.ota_progress_applied,
                "progress_ignored": self.ota_progress_ignored,
            },
            "sweeps": {name: stats.as_dict() for name, stats in self.sweeps.items()},
            "supervisor": {name: stats.as_dict() for name, stats in self.supervisors.items()},
        }


def create_bridge_state(config: RuntimeConfig) -> BridgeState:
    state = BridgeState()
    state.configure(config)
    return state
