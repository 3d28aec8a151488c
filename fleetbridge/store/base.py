"""Collaborator interfaces consumed by the bridge services.

The services only talk to these protocols. ``fleetbridge.store.sql`` provides
the SQLAlchemy implementation; tests may substitute their own.

Every method that changes a status is a conditional update: it returns whether
a row matched its guard, and a ``False`` is a normal outcome (stale or
duplicate input), not an error.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Protocol

import msgspec

from ..protocol.payloads import TelemetryData
from ..state.lifecycle import CommandSource, CommandStatus, OtaStatus
from .models import AlarmSeverity, AlarmSource, AlarmType


class DeviceRecord(msgspec.Struct, frozen=True):
    id: int
    device_key: str
    online: bool = False
    last_seen_at: datetime | None = None
    mqtt_client_id: str | None = None
    mac: str | None = None
    home_id: int | None = None
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class FirmwareRecord(msgspec.Struct, frozen=True):
    id: int
    platform: str
    version: str
    sha256: str
    size_bytes: int
    download_url: str


class CommandRecord(msgspec.Struct, frozen=True, rename="camel"):
    id: int
    device_id: int
    type: str
    payload: dict[str, Any]
    status: CommandStatus
    correlation_id: str
    source: CommandSource
    requested_by: int | None = None
    acked_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class OtaJobRecord(msgspec.Struct, frozen=True, rename="camel"):
    id: int
    device_id: int
    release_id: int
    status: OtaStatus
    command_id: int | None = None
    progress: float | None = None
    last_error: str | None = None
    requested_by: int | None = None
    sent_at: datetime | None = None
    downloading_at: datetime | None = None
    applied_at: datetime | None = None
    failed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AlarmCandidate(msgspec.Struct, frozen=True):
    type: AlarmType
    severity: AlarmSeverity
    message: str
    source: AlarmSource = AlarmSource.DEVICE


class OtaExpiry(msgspec.Struct, frozen=True):
    """Outcome of one OTA timeout sweep."""

    job_ids: tuple[int, ...] = ()
    command_ids: tuple[int, ...] = ()


class DeviceDirectory(Protocol):
    async def get_device(self, device_id: int) -> DeviceRecord | None: ...

    async def touch_with_key(self, device_id: int, device_key: str, mqtt_client_id: str | None = None) -> bool:
        """Mark online and refresh last-seen iff id and key match a live device."""
        ...

    async def mark_online(self, device_id: int) -> None: ...

    async def mark_stale_offline(self, threshold: timedelta) -> int: ...


class FirmwareStore(Protocol):
    async def get_release(self, release_id: int) -> FirmwareRecord | None:
        """Return a non-deleted release with its resolved download URL."""
        ...


class CommandLedger(Protocol):
    async def create_command(
        self,
        *,
        device_id: int,
        type: str,
        payload: dict[str, Any],
        source: CommandSource,
        requested_by: int | None = None,
    ) -> CommandRecord: ...

    async def get_command(self, command_id: int) -> CommandRecord | None: ...

    async def transition_command(
        self,
        command_id: int,
        event: str,
        *,
        device_id: int | None = None,
        last_error: str | None = None,
        set_acked_at: bool = False,
    ) -> bool: ...

    async def expire_commands(self, older_than: timedelta, *, limit: int) -> tuple[int, ...]: ...

    async def create_ota_job(
        self,
        *,
        device_id: int,
        release_id: int,
        command_type: str,
        command_payload: dict[str, Any],
        source: CommandSource,
        requested_by: int | None = None,
    ) -> tuple[OtaJobRecord, CommandRecord]:
        """Create the job and its linked command in one transaction."""
        ...

    async def get_ota_job(self, job_id: int) -> OtaJobRecord | None: ...

    async def list_ota_jobs(self, device_id: int, *, limit: int) -> list[OtaJobRecord]: ...

    async def transition_ota_job(self, job_id: int, event: str, *, last_error: str | None = None) -> bool: ...

    async def apply_ota_report(
        self,
        job_id: int,
        *,
        device_id: int,
        status: OtaStatus,
        progress: float | None,
        error: str | None,
        guarded: bool,
    ) -> bool: ...

    async def expire_ota_jobs(self, older_than: timedelta, *, limit: int) -> OtaExpiry: ...


class AlarmSink(Protocol):
    async def record_reading(self, device_id: int, timestamp: datetime | None, data: TelemetryData) -> int: ...

    async def raise_alarm(
        self,
        device_id: int,
        candidate: AlarmCandidate,
        *,
        home_id: int | None,
        window: timedelta,
        reading_id: int | None = None,
    ) -> bool:
        """Insert *candidate* unless the same alarm fired inside *window*."""
        ...
