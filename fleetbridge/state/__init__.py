"""In-process runtime state and record lifecycles."""

from .context import BridgeState, create_bridge_state
from .lifecycle import (
    COMMAND_LIFECYCLE,
    OTA_LIFECYCLE,
    CommandSource,
    CommandStatus,
    OtaStatus,
)

__all__ = [
    "BridgeState",
    "COMMAND_LIFECYCLE",
    "CommandSource",
    "CommandStatus",
    "OTA_LIFECYCLE",
    "OtaStatus",
    "create_bridge_state",
]
