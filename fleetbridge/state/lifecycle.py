"""Status lifecycles for ledger records.

Each lifecycle is a ``transitions`` state machine used as the transition
table for conditional updates: the ledger never writes a status without a
``WHERE status IN (<sources>)`` guard, and the sources come from here.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Generic, TypeVar

from transitions import Machine


class CommandStatus(StrEnum):
    PENDING = "PENDING"
    SENT = "SENT"
    ACKED = "ACKED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


class CommandSource(StrEnum):
    USER = "USER"
    BACKEND = "BACKEND"
    AI = "AI"
    ADMIN = "ADMIN"


class OtaStatus(StrEnum):
    PENDING = "PENDING"
    SENT = "SENT"
    DOWNLOADING = "DOWNLOADING"
    APPLIED = "APPLIED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


S = TypeVar("S", bound=StrEnum)

_COMMAND_TRANSITIONS: list[dict[str, Any]] = [
    {"trigger": "send", "source": "PENDING", "dest": "SENT"},
    {"trigger": "reject", "source": "PENDING", "dest": "FAILED"},
    # A late ack may still rescue a command the sweeper timed out.
    {"trigger": "ack", "source": ["SENT", "TIMEOUT"], "dest": "ACKED"},
    {"trigger": "nack", "source": ["SENT", "TIMEOUT"], "dest": "FAILED"},
    {"trigger": "expire", "source": "SENT", "dest": "TIMEOUT"},
    {"trigger": "cascade_timeout", "source": ["PENDING", "SENT"], "dest": "TIMEOUT"},
]

_OTA_TRANSITIONS: list[dict[str, Any]] = [
    {"trigger": "send", "source": "PENDING", "dest": "SENT"},
    {"trigger": "reject", "source": "PENDING", "dest": "FAILED"},
    # Device reports can overtake the bridge's own SENT write.
    {"trigger": "download", "source": ["PENDING", "SENT", "DOWNLOADING"], "dest": "DOWNLOADING"},
    {"trigger": "apply", "source": ["PENDING", "SENT", "DOWNLOADING"], "dest": "APPLIED"},
    {"trigger": "fail", "source": ["PENDING", "SENT", "DOWNLOADING"], "dest": "FAILED"},
    {"trigger": "expire", "source": ["SENT", "DOWNLOADING"], "dest": "TIMEOUT"},
]


class StatusLifecycle(Generic[S]):
    """Transition table for one record type."""

    def __init__(
        self,
        status_type: type[S],
        transitions: list[dict[str, Any]],
        *,
        terminal: frozenset[S],
    ) -> None:
        self.status_type = status_type
        self.terminal = terminal
        self.fsm_state = next(iter(status_type)).value
        self.machine = Machine(
            model=self,
            states=[status.value for status in status_type],
            transitions=transitions,
            initial=self.fsm_state,
            model_attribute="fsm_state",
            ignore_invalid_triggers=True,
            auto_transitions=False,
        )

    def sources(self, event: str) -> tuple[S, ...]:
        """States *event* may fire from, in declaration order."""
        found = self.machine.get_transitions(trigger=event)
        if not found:
            raise KeyError(f"unknown {self.status_type.__name__} event: {event}")
        return tuple(self.status_type(transition.source) for transition in found)

    def destination(self, event: str) -> S:
        found = self.machine.get_transitions(trigger=event)
        if not found:
            raise KeyError(f"unknown {self.status_type.__name__} event: {event}")
        return self.status_type(found[0].dest)

    def allows(self, status: S | str, event: str) -> bool:
        return bool(self.machine.get_transitions(trigger=event, source=str(status)))

    @property
    def live(self) -> tuple[S, ...]:
        return tuple(status for status in self.status_type if status not in self.terminal)


COMMAND_LIFECYCLE: StatusLifecycle[CommandStatus] = StatusLifecycle(
    CommandStatus,
    _COMMAND_TRANSITIONS,
    terminal=frozenset({CommandStatus.ACKED, CommandStatus.FAILED, CommandStatus.TIMEOUT}),
)

OTA_LIFECYCLE: StatusLifecycle[OtaStatus] = StatusLifecycle(
    OtaStatus,
    _OTA_TRANSITIONS,
    terminal=frozenset({OtaStatus.APPLIED, OtaStatus.FAILED, OtaStatus.TIMEOUT}),
)

# Device-reported OTA status -> lifecycle event.
OTA_REPORT_EVENTS: dict[str, str] = {
    OtaStatus.DOWNLOADING.value: "download",
    OtaStatus.APPLIED.value: "apply",
    OtaStatus.FAILED.value: "fail",
}
