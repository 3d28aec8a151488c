"""SQLAlchemy asyncio implementation of the collaborator interfaces.

Every status write is an ``UPDATE ... WHERE status IN (<sources>)`` whose
sources come from the record lifecycle; the matched row count is the outcome.
Timestamps come from the database clock (``SELECT now()``) so the bridge host
clock never participates in deadline arithmetic.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..protocol.payloads import TelemetryData
from ..state.lifecycle import COMMAND_LIFECYCLE, OTA_LIFECYCLE, OTA_REPORT_EVENTS, CommandSource, CommandStatus, OtaStatus
from .base import (
    AlarmCandidate,
    CommandRecord,
    DeviceRecord,
    FirmwareRecord,
    OtaExpiry,
    OtaJobRecord,
)
from .models import AlarmEvent, Command, Device, FirmwareRelease, OtaJob, SensorReading

logger = logging.getLogger("fleetbridge.store")

SessionFactory = async_sessionmaker[AsyncSession]

COMMAND_ACK_TIMEOUT_ERROR = "ACK_TIMEOUT"
OTA_TIMEOUT_ERROR = "OTA_TIMEOUT"


async def store_now(session: AsyncSession) -> datetime:
    """Current time according to the database."""
    value = await session.scalar(select(func.now()))
    if value is None:
        raise RuntimeError("database returned no current timestamp")
    if value.tzinfo is None:
        # SQLite CURRENT_TIMESTAMP is UTC without an offset.
        value = value.replace(tzinfo=timezone.utc)
    return value


def _device_record(row: Device) -> DeviceRecord:
    return DeviceRecord(
        id=row.id,
        device_key=row.device_key,
        online=row.online,
        last_seen_at=row.last_seen_at,
        mqtt_client_id=row.mqtt_client_id,
        mac=row.mac,
        home_id=row.home_id,
        deleted_at=row.deleted_at,
    )


def _command_record(row: Command) -> CommandRecord:
    return CommandRecord(
        id=row.id,
        device_id=row.device_id,
        type=row.type,
        payload=dict(row.payload or {}),
        status=row.status,
        correlation_id=row.correlation_id,
        source=row.source,
        requested_by=row.requested_by,
        acked_at=row.acked_at,
        last_error=row.last_error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _ota_job_record(row: OtaJob) -> OtaJobRecord:
    return OtaJobRecord(
        id=row.id,
        device_id=row.device_id,
        release_id=row.release_id,
        status=row.status,
        command_id=row.command_id,
        progress=row.progress,
        last_error=row.last_error,
        requested_by=row.requested_by,
        sent_at=row.sent_at,
        downloading_at=row.downloading_at,
        applied_at=row.applied_at,
        failed_at=row.failed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlDeviceDirectory:
    """Device lookup and liveness writes."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._sessions = session_factory

    async def get_device(self, device_id: int) -> DeviceRecord | None:
        async with self._sessions() as session:
            row = await session.get(Device, device_id)
            return _device_record(row) if row is not None else None

    async def touch_with_key(self, device_id: int, device_key: str, mqtt_client_id: str | None = None) -> bool:
        async with self._sessions.begin() as session:
            now = await store_now(session)
            values: dict[str, Any] = {"online": True, "last_seen_at": now, "updated_at": now}
            if mqtt_client_id:
                values["mqtt_client_id"] = mqtt_client_id
            result = await session.execute(
                update(Device)
                .where(
                    Device.id == device_id,
                    Device.device_key == device_key,
                    Device.deleted_at.is_(None),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def mark_online(self, device_id: int) -> None:
        async with self._sessions.begin() as session:
            now = await store_now(session)
            await session.execute(
                update(Device)
                .where(Device.id == device_id)
                .values(online=True, last_seen_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )

    async def mark_stale_offline(self, threshold: timedelta) -> int:
        async with self._sessions.begin() as session:
            now = await store_now(session)
            result = await session.execute(
                update(Device)
                .where(
                    Device.deleted_at.is_(None),
                    Device.online.is_(True),
                    Device.last_seen_at.is_not(None),
                    Device.last_seen_at < now - threshold,
                )
                .values(online=False, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount


class SqlFirmwareStore:
    """Release metadata lookup; derives download URLs when none is stored."""

    def __init__(self, session_factory: SessionFactory, base_url: str) -> None:
        self._sessions = session_factory
        self._base_url = base_url.rstrip("/")

    async def get_release(self, release_id: int) -> FirmwareRecord | None:
        async with self._sessions() as session:
            row = await session.get(FirmwareRelease, release_id)
            if row is None or row.deleted_at is not None:
                return None
            return FirmwareRecord(
                id=row.id,
                platform=row.platform,
                version=row.version,
                sha256=row.sha256,
                size_bytes=row.size_bytes,
                download_url=row.download_url or f"{self._base_url}/{row.id}/download",
            )


class SqlCommandLedger:
    """Command and OTA job ledger."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._sessions = session_factory

    # --- Commands ---

    async def create_command(
        self,
        *,
        device_id: int,
        type: str,
        payload: dict[str, Any],
        source: CommandSource,
        requested_by: int | None = None,
    ) -> CommandRecord:
        async with self._sessions.begin() as session:
            now = await store_now(session)
            row = self._new_command(now, device_id, type, payload, source, requested_by)
            session.add(row)
            await session.flush()
            return _command_record(row)

    async def get_command(self, command_id: int) -> CommandRecord | None:
        async with self._sessions() as session:
            row = await session.get(Command, command_id)
            return _command_record(row) if row is not None else None

    async def transition_command(
        self,
        command_id: int,
        event: str,
        *,
        device_id: int | None = None,
        last_error: str | None = None,
        set_acked_at: bool = False,
    ) -> bool:
        """Fire *event* on one command.

        Acks (``set_acked_at``) always write ``last_error``, clearing it when
        None; other events only write it when given.
        """
        async with self._sessions.begin() as session:
            now = await store_now(session)
            values: dict[str, Any] = {
                "status": COMMAND_LIFECYCLE.destination(event),
                "updated_at": now,
            }
            if set_acked_at:
                values["acked_at"] = now
                values["last_error"] = last_error
            elif last_error is not None:
                values["last_error"] = last_error

            stmt = update(Command).where(
                Command.id == command_id,
                Command.status.in_(COMMAND_LIFECYCLE.sources(event)),
            )
            if device_id is not None:
                stmt = stmt.where(Command.device_id == device_id)
            result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
            return result.rowcount > 0

    async def expire_commands(self, older_than: timedelta, *, limit: int) -> tuple[int, ...]:
        sources = COMMAND_LIFECYCLE.sources("expire")
        async with self._sessions.begin() as session:
            now = await store_now(session)
            cutoff = now - older_than
            candidates = (
                select(Command.id)
                .where(
                    Command.status.in_(sources),
                    Command.acked_at.is_(None),
                    Command.created_at < cutoff,
                )
                .order_by(Command.created_at)
                .limit(limit)
                .scalar_subquery()
            )
            result = await session.execute(
                update(Command)
                .where(
                    Command.id.in_(candidates),
                    Command.status.in_(sources),
                    Command.acked_at.is_(None),
                )
                .values(
                    status=COMMAND_LIFECYCLE.destination("expire"),
                    last_error=COMMAND_ACK_TIMEOUT_ERROR,
                    updated_at=now,
                )
                .returning(Command.id)
                .execution_options(synchronize_session=False)
            )
            return tuple(result.scalars().all())

    # --- OTA jobs ---

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
        async with self._sessions.begin() as session:
            now = await store_now(session)
            command = self._new_command(now, device_id, command_type, command_payload, source, requested_by)
            session.add(command)
            await session.flush()

            job = OtaJob(
                device_id=device_id,
                release_id=release_id,
                command_id=command.id,
                status=OtaStatus.PENDING,
                progress=None,
                last_error=None,
                requested_by=requested_by,
                sent_at=None,
                downloading_at=None,
                applied_at=None,
                failed_at=None,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            await session.flush()
            return _ota_job_record(job), _command_record(command)

    async def get_ota_job(self, job_id: int) -> OtaJobRecord | None:
        async with self._sessions() as session:
            row = await session.get(OtaJob, job_id)
            return _ota_job_record(row) if row is not None else None

    async def list_ota_jobs(self, device_id: int, *, limit: int) -> list[OtaJobRecord]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(OtaJob)
                .where(OtaJob.device_id == device_id)
                .order_by(OtaJob.created_at.desc(), OtaJob.id.desc())
                .limit(limit)
            )
            return [_ota_job_record(row) for row in rows]

    async def transition_ota_job(self, job_id: int, event: str, *, last_error: str | None = None) -> bool:
        async with self._sessions.begin() as session:
            now = await store_now(session)
            dest = OTA_LIFECYCLE.destination(event)
            values: dict[str, Any] = {"status": dest, "updated_at": now}
            values.update(self._milestones(dest, now))
            if last_error is not None:
                values["last_error"] = last_error
            result = await session.execute(
                update(OtaJob)
                .where(OtaJob.id == job_id, OtaJob.status.in_(OTA_LIFECYCLE.sources(event)))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def apply_ota_report(
        self,
        job_id: int,
        *,
        device_id: int,
        status: OtaStatus,
        progress: float | None,
        error: str | None,
        guarded: bool,
    ) -> bool:
        event = OTA_REPORT_EVENTS[status.value]
        async with self._sessions.begin() as session:
            now = await store_now(session)
            values: dict[str, Any] = {"status": status, "updated_at": now}
            values.update(self._milestones(status, now))
            if status is OtaStatus.APPLIED:
                values["progress"] = 1.0
            elif progress is not None:
                # Never move progress backwards.
                values["progress"] = case(
                    (OtaJob.progress.is_(None), progress),
                    (OtaJob.progress < progress, progress),
                    else_=OtaJob.progress,
                )
            if error is not None:
                values["last_error"] = error

            stmt = update(OtaJob).where(OtaJob.id == job_id, OtaJob.device_id == device_id)
            if guarded:
                stmt = stmt.where(OtaJob.status.in_(OTA_LIFECYCLE.sources(event)))
            result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
            return result.rowcount > 0

    async def expire_ota_jobs(self, older_than: timedelta, *, limit: int) -> OtaExpiry:
        sources = OTA_LIFECYCLE.sources("expire")
        async with self._sessions.begin() as session:
            now = await store_now(session)
            candidates = (
                select(OtaJob.id)
                .where(OtaJob.status.in_(sources), OtaJob.updated_at < now - older_than)
                .order_by(OtaJob.updated_at)
                .limit(limit)
                .scalar_subquery()
            )
            expired = await session.execute(
                update(OtaJob)
                .where(OtaJob.id.in_(candidates), OtaJob.status.in_(sources))
                .values(
                    status=OTA_LIFECYCLE.destination("expire"),
                    last_error=OTA_TIMEOUT_ERROR,
                    failed_at=func.coalesce(OtaJob.failed_at, now),
                    updated_at=now,
                )
                .returning(OtaJob.id, OtaJob.command_id)
                .execution_options(synchronize_session=False)
            )
            rows = expired.all()
            job_ids = tuple(row[0] for row in rows)
            linked = [row[1] for row in rows if row[1] is not None]
            if not linked:
                return OtaExpiry(job_ids=job_ids)

            cascaded = await session.execute(
                update(Command)
                .where(
                    Command.id.in_(linked),
                    Command.status.in_(COMMAND_LIFECYCLE.sources("cascade_timeout")),
                )
                .values(
                    status=COMMAND_LIFECYCLE.destination("cascade_timeout"),
                    last_error=OTA_TIMEOUT_ERROR,
                    updated_at=now,
                )
                .returning(Command.id)
                .execution_options(synchronize_session=False)
            )
            return OtaExpiry(job_ids=job_ids, command_ids=tuple(cascaded.scalars().all()))

    # --- helpers ---

    @staticmethod
    def _new_command(
        now: datetime,
        device_id: int,
        type: str,
        payload: dict[str, Any],
        source: CommandSource,
        requested_by: int | None,
    ) -> Command:
        return Command(
            device_id=device_id,
            type=type,
            payload=payload,
            source=source,
            requested_by=requested_by,
            status=CommandStatus.PENDING,
            correlation_id=str(uuid.uuid4()),
            acked_at=None,
            last_error=None,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _milestones(status: OtaStatus, now: datetime) -> dict[str, Any]:
        """Milestone columns entered by moving to *status*; each is written once."""
        columns: list[str] = []
        if status in (OtaStatus.SENT, OtaStatus.DOWNLOADING, OtaStatus.APPLIED):
            columns.append("sent_at")
        if status is OtaStatus.DOWNLOADING:
            columns.append("downloading_at")
        elif status is OtaStatus.APPLIED:
            columns.append("applied_at")
        elif status in (OtaStatus.FAILED, OtaStatus.TIMEOUT):
            columns.append("failed_at")
        return {column: func.coalesce(getattr(OtaJob, column), now) for column in columns}


class SqlAlarmSink:
    """Sensor reading persistence and deduplicated alarm inserts."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._sessions = session_factory

    async def record_reading(self, device_id: int, timestamp: datetime | None, data: TelemetryData) -> int:
        async with self._sessions.begin() as session:
            when = timestamp or await store_now(session)
            row = SensorReading(
                device_id=device_id,
                timestamp=when,
                current=data.current,
                gas_ppm=data.gas_ppm,
                flame=data.flame,
                bin_level=data.bin_level,
                voltage_v=data.voltage_v,
                current_a=data.current_a,
                frequency_hz=data.frequency_hz,
                power_factor=data.power_factor,
                power_w=data.power_w,
                energy_kwh=data.energy_kwh,
                distance_cm=data.distance_cm,
            )
            session.add(row)
            await session.flush()
            return row.id

    async def raise_alarm(
        self,
        device_id: int,
        candidate: AlarmCandidate,
        *,
        home_id: int | None,
        window: timedelta,
        reading_id: int | None = None,
    ) -> bool:
        async with self._sessions.begin() as session:
            now = await store_now(session)
            recent = await session.scalar(
                select(AlarmEvent.id)
                .where(
                    AlarmEvent.device_id == device_id,
                    AlarmEvent.type == candidate.type,
                    AlarmEvent.source == candidate.source,
                    AlarmEvent.triggered_at >= now - window,
                )
                .limit(1)
            )
            if recent is not None:
                return False
            session.add(
                AlarmEvent(
                    device_id=device_id,
                    home_id=home_id,
                    sensor_reading_id=reading_id,
                    type=candidate.type,
                    severity=candidate.severity,
                    source=candidate.source,
                    message=candidate.message,
                    triggered_at=now,
                )
            )
            return True
