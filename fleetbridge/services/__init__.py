"""Service layer for Fleet Bridge operations."""

from .base import BridgeComponent, PublishCallable, publisher_not_ready
from .commands import CommandDispatcher, DispatchResult
from .ota import OtaOrchestrator, OtaTriggerResult
from .registration import RegistrationService
from .retry import RetryPolicy, is_transport_error, with_retry
from .runtime import BridgeService
from .sweepers import CommandTimeoutSweeper, DeviceOfflineSweeper, OtaTimeoutSweeper, PeriodicSweeper
from .telemetry import TelemetryIngestor, build_alarm_candidates

__all__ = [
    "BridgeComponent",
    "BridgeService",
    "CommandDispatcher",
    "CommandTimeoutSweeper",
    "DeviceOfflineSweeper",
    "DispatchResult",
    "OtaOrchestrator",
    "OtaTimeoutSweeper",
    "OtaTriggerResult",
    "PeriodicSweeper",
    "PublishCallable",
    "RegistrationService",
    "RetryPolicy",
    "TelemetryIngestor",
    "build_alarm_candidates",
    "is_transport_error",
    "publisher_not_ready",
    "with_retry",
]
