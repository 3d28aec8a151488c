"""Heartbeat and telemetry admission.

Both channels authenticate with the per-device key. A heartbeat is a single
guarded directory update; telemetry looks the device up first because a
rejected key must leave no trace at all (no online flag, no reading).
"""

from __future__ import annotations

import hmac
import logging
from datetime import timedelta

from ..config.model import RuntimeConfig
from ..protocol.payloads import HeartbeatPayload, TelemetryData, TelemetryPayload
from ..state.context import BridgeState
from ..store.base import AlarmCandidate, AlarmSink, DeviceDirectory
from ..store.models import AlarmSeverity, AlarmSource, AlarmType
from ..util import from_epoch_ms

logger = logging.getLogger("fleetbridge.telemetry")


def build_alarm_candidates(data: TelemetryData, config: RuntimeConfig) -> list[AlarmCandidate]:
    """Alarms implied by one reading, before deduplication."""
    candidates: list[AlarmCandidate] = []
    if data.gas_ppm > config.alarm_gas_ppm_threshold:
        candidates.append(
            AlarmCandidate(
                type=AlarmType.GAS,
                severity=AlarmSeverity.CRITICAL,
                message=f"Gas level {data.gas_ppm:g} ppm exceeds {config.alarm_gas_ppm_threshold:g} ppm",
                source=AlarmSource.DEVICE,
            )
        )
    if data.flame:
        candidates.append(
            AlarmCandidate(
                type=AlarmType.FLAME,
                severity=AlarmSeverity.CRITICAL,
                message="Flame detected",
                source=AlarmSource.DEVICE,
            )
        )
    if data.bin_level > config.alarm_bin_level_threshold:
        candidates.append(
            AlarmCandidate(
                type=AlarmType.TRASH,
                severity=AlarmSeverity.MEDIUM,
                message=f"Bin level {data.bin_level:g}% exceeds {config.alarm_bin_level_threshold:g}%",
                source=AlarmSource.DEVICE,
            )
        )
    threshold = config.power_current_threshold
    if threshold is not None and data.current > threshold:
        candidates.append(
            AlarmCandidate(
                type=AlarmType.POWER,
                severity=AlarmSeverity.HIGH,
                message=f"Current draw {data.current:g} A exceeds {threshold:g} A",
                source=AlarmSource.DEVICE,
            )
        )
    return candidates


class TelemetryIngestor:
    """Applies authenticated heartbeats and telemetry readings."""

    def __init__(
        self,
        config: RuntimeConfig,
        state: BridgeState,
        directory: DeviceDirectory,
        alarms: AlarmSink,
    ) -> None:
        self.config = config
        self.state = state
        self.directory = directory
        self.alarms = alarms
        self.dedup_window = timedelta(milliseconds=config.alarm_dedup_window_ms)

    async def apply_heartbeat(self, device_id: int, heartbeat: HeartbeatPayload) -> bool:
        touched = await self.directory.touch_with_key(
            device_id,
            heartbeat.device_key,
            heartbeat.mqtt_client_id,
        )
        if not touched:
            self.state.record_drop("heartbeat_auth")
            logger.warning("Heartbeat from device %d rejected: unknown device or key mismatch", device_id)
            return False
        self.state.heartbeats_accepted += 1
        logger.debug("Heartbeat accepted from device %d", device_id)
        return True

    async def apply_telemetry(self, device_id: int, telemetry: TelemetryPayload) -> int | None:
        """Persist a reading and raise alarms; returns the reading id."""
        device = await self.directory.get_device(device_id)
        if device is None or device.is_deleted:
            self.state.record_drop("telemetry_unknown_device")
            logger.warning("Telemetry for unknown device %d dropped", device_id)
            return None
        if not device.device_key or not hmac.compare_digest(
            device.device_key.encode("utf-8"),
            telemetry.device_key.encode("utf-8"),
        ):
            self.state.record_drop("telemetry_auth")
            logger.warning("Telemetry from device %d rejected: device key mismatch", device_id)
            return None

        timestamp = from_epoch_ms(telemetry.ts) if telemetry.ts is not None else None
        await self.directory.mark_online(device_id)
        reading_id = await self.alarms.record_reading(device_id, timestamp, telemetry.data)
        self.state.telemetry_accepted += 1

        for candidate in build_alarm_candidates(telemetry.data, self.config):
            created = await self.alarms.raise_alarm(
                device_id,
                candidate,
                home_id=device.home_id,
                window=self.dedup_window,
                reading_id=reading_id,
            )
            if created:
                self.state.alarms_created += 1
                logger.warning(
                    "Alarm %s/%s raised for device %d: %s",
                    candidate.type.value,
                    candidate.severity.value,
                    device_id,
                    candidate.message,
                )
            else:
                self.state.alarms_suppressed += 1
                logger.debug("Alarm %s for device %d suppressed inside dedup window", candidate.type.value, device_id)
        return reading_id


__all__ = ["TelemetryIngestor", "build_alarm_candidates"]
