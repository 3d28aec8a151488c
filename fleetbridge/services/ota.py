"""OTA job orchestration.

A job and its ``OTA_UPDATE`` command are created together, the command goes
out through the normal dispatch path, and the job follows the dispatch
outcome. From then on the device drives the job through ``ota/progress``
reports, and the OTA timeout sweeper ends jobs the device abandoned.
"""

from __future__ import annotations

import logging
from typing import Any

import msgspec

from ..config.model import RuntimeConfig
from ..const import OTA_LIST_DEFAULT_LIMIT, OTA_LIST_MAX_LIMIT
from ..errors import NotFoundError
from ..protocol.payloads import OtaProgressPayload
from ..state.context import BridgeState
from ..state.lifecycle import CommandSource, OtaStatus
from ..store.base import CommandLedger, DeviceDirectory, FirmwareRecord, FirmwareStore, OtaJobRecord
from .commands import DEVICE_NOT_FOUND, CommandDispatcher

logger = logging.getLogger("fleetbridge.ota")

OTA_UPDATE = "OTA_UPDATE"
FIRMWARE_RELEASE_NOT_FOUND = "FIRMWARE_RELEASE_NOT_FOUND"
OTA_JOB_NOT_FOUND = "OTA_JOB_NOT_FOUND"


class OtaTriggerResult(msgspec.Struct, frozen=True, rename="camel"):
    ota_job_id: int
    command_id: int | None
    status: OtaStatus


def build_ota_command_payload(release: FirmwareRecord) -> dict[str, Any]:
    return {
        "releaseId": release.id,
        "version": release.version,
        "checksum": release.sha256,
        "sizeBytes": release.size_bytes,
        "url": release.download_url,
    }


def clamp_list_limit(limit: int | None) -> int:
    if limit is None:
        return OTA_LIST_DEFAULT_LIMIT
    return min(max(int(limit), 1), OTA_LIST_MAX_LIMIT)


class OtaOrchestrator:
    """Creates OTA jobs and applies device progress reports."""

    def __init__(
        self,
        config: RuntimeConfig,
        state: BridgeState,
        ledger: CommandLedger,
        directory: DeviceDirectory,
        firmware: FirmwareStore,
        dispatcher: CommandDispatcher,
    ) -> None:
        self.config = config
        self.state = state
        self.ledger = ledger
        self.directory = directory
        self.firmware = firmware
        self.dispatcher = dispatcher

    async def trigger(
        self,
        device_id: int,
        release_id: int,
        *,
        requested_by: int | None = None,
        source: CommandSource | None = None,
    ) -> OtaTriggerResult:
        device = await self.directory.get_device(device_id)
        if device is None or device.is_deleted:
            raise NotFoundError(DEVICE_NOT_FOUND, f"device {device_id} not found")
        release = await self.firmware.get_release(release_id)
        if release is None:
            raise NotFoundError(FIRMWARE_RELEASE_NOT_FOUND, f"firmware release {release_id} not found")

        if source is None:
            source = CommandSource.USER if requested_by is not None else CommandSource.BACKEND

        job, command = await self.ledger.create_ota_job(
            device_id=device_id,
            release_id=release.id,
            command_type=OTA_UPDATE,
            command_payload=build_ota_command_payload(release),
            source=source,
            requested_by=requested_by,
        )
        self.state.commands_created += 1
        self.state.ota_triggered += 1
        logger.info(
            "OTA job %d created for device %d (release %d, version %s, command %d)",
            job.id,
            device_id,
            release.id,
            release.version,
            command.id,
        )

        result = await self.dispatcher.dispatch(command.id)
        if result.ok:
            event, error, target = "send", None, OtaStatus.SENT
        else:
            event, error, target = "reject", result.error, OtaStatus.FAILED
        moved = await self.ledger.transition_ota_job(job.id, event, last_error=error)

        status = target
        if not moved:
            # A device report already moved the job past PENDING.
            current = await self.ledger.get_ota_job(job.id)
            status = current.status if current is not None else job.status
        if result.ok:
            logger.info("OTA job %d is %s", job.id, status)
        else:
            logger.warning("OTA job %d is %s: %s", job.id, status, error)
        return OtaTriggerResult(ota_job_id=job.id, command_id=command.id, status=status)

    async def get_ota_job(self, job_id: int) -> OtaJobRecord:
        job = await self.ledger.get_ota_job(job_id)
        if job is None:
            raise NotFoundError(OTA_JOB_NOT_FOUND, f"OTA job {job_id} not found")
        return job

    async def list_ota_jobs(self, device_id: int, limit: int | None = OTA_LIST_DEFAULT_LIMIT) -> list[OtaJobRecord]:
        return await self.ledger.list_ota_jobs(device_id, limit=clamp_list_limit(limit))

    async def apply_progress(self, device_id: int, report: OtaProgressPayload) -> bool:
        try:
            status = OtaStatus(report.status)
        except ValueError:
            status = None
        if status not in (OtaStatus.DOWNLOADING, OtaStatus.APPLIED, OtaStatus.FAILED):
            self.state.record_drop("ota_unknown_status")
            logger.warning(
                "OTA report for job %d from device %d has unknown status %r; dropped",
                report.ota_job_id,
                device_id,
                report.status,
            )
            return False

        progress = report.progress_in_range
        if report.progress is not None and progress is None:
            logger.info(
                "OTA job %d progress %r outside [0, 1]; stored progress left unchanged",
                report.ota_job_id,
                report.progress,
            )

        applied = await self.ledger.apply_ota_report(
            report.ota_job_id,
            device_id=device_id,
            status=status,
            progress=progress,
            error=report.error,
            guarded=self.config.ota_progress_terminal_guard,
        )
        if applied:
            self.state.ota_progress_applied += 1
            logger.info(
                "OTA job %d on device %d -> %s (progress=%s)",
                report.ota_job_id,
                device_id,
                status,
                1.0 if status is OtaStatus.APPLIED else progress,
            )
        else:
            self.state.ota_progress_ignored += 1
            logger.info(
                "OTA report %s for job %d from device %d matched no updatable job; ignored",
                status,
                report.ota_job_id,
                device_id,
            )
        return applied


__all__ = [
    "FIRMWARE_RELEASE_NOT_FOUND",
    "OTA_JOB_NOT_FOUND",
    "OTA_UPDATE",
    "OtaOrchestrator",
    "OtaTriggerResult",
    "build_ota_command_payload",
    "clamp_list_limit",
]
