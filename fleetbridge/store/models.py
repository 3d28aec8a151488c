"""SQLAlchemy models backing the device directory, firmware store, ledger and alarm sink."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, Float, ForeignKey, Index, MetaData, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..state.lifecycle import CommandSource, CommandStatus, OtaStatus

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=convention)
    type_annotation_map = {
        datetime: DateTime(timezone=True),
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
    }


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())


def _status_enum(enum_type: type[enum.Enum]) -> Enum:
    return Enum(enum_type, native_enum=False, length=16, validate_strings=True)


class AlarmType(str, enum.Enum):
    GAS = "GAS"
    FLAME = "FLAME"
    TRASH = "TRASH"
    POWER = "POWER"


class AlarmSeverity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlarmSource(str, enum.Enum):
    DEVICE = "DEVICE"
    AI = "AI"
    SYSTEM = "SYSTEM"


class Device(TimestampMixin, Base):
    __tablename__ = "devices"

    id: Mapped[int] = mapped_column(primary_key=True)
    device_key: Mapped[str] = mapped_column(String(128))
    name: Mapped[str | None] = mapped_column(String(100), default=None)
    home_id: Mapped[int | None] = mapped_column(default=None)
    mac: Mapped[str | None] = mapped_column(String(17), default=None)
    online: Mapped[bool] = mapped_column(default=False)
    last_seen_at: Mapped[datetime | None] = mapped_column(default=None)
    mqtt_client_id: Mapped[str | None] = mapped_column(String(256), default=None)
    deleted_at: Mapped[datetime | None] = mapped_column(default=None)

    __table_args__ = (Index("ix_devices_online_last_seen", "online", "last_seen_at"),)


class FirmwareRelease(TimestampMixin, Base):
    __tablename__ = "firmware_releases"

    id: Mapped[int] = mapped_column(primary_key=True)
    platform: Mapped[str] = mapped_column(String(50))
    version: Mapped[str] = mapped_column(String(50))
    sha256: Mapped[str] = mapped_column(String(64))
    size_bytes: Mapped[int]
    download_url: Mapped[str | None] = mapped_column(String(512), default=None)
    deleted_at: Mapped[datetime | None] = mapped_column(default=None)


class Command(TimestampMixin, Base):
    __tablename__ = "commands"

    id: Mapped[int] = mapped_column(primary_key=True)
    device_id: Mapped[int] = mapped_column(ForeignKey("devices.id", ondelete="CASCADE"))
    type: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict[str, Any]] = mapped_column(default=dict)
    status: Mapped[CommandStatus] = mapped_column(_status_enum(CommandStatus), default=CommandStatus.PENDING)
    correlation_id: Mapped[str] = mapped_column(String(36), unique=True)
    requested_by: Mapped[int | None] = mapped_column(default=None)
    source: Mapped[CommandSource] = mapped_column(_status_enum(CommandSource), default=CommandSource.BACKEND)
    acked_at: Mapped[datetime | None] = mapped_column(default=None)
    last_error: Mapped[str | None] = mapped_column(String(1024), default=None)

    __table_args__ = (
        Index("ix_commands_device_created", "device_id", "created_at"),
        Index("ix_commands_status_created", "status", "created_at"),
    )


class OtaJob(TimestampMixin, Base):
    __tablename__ = "ota_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    device_id: Mapped[int] = mapped_column(ForeignKey("devices.id", ondelete="CASCADE"))
    release_id: Mapped[int] = mapped_column(ForeignKey("firmware_releases.id"))
    command_id: Mapped[int | None] = mapped_column(ForeignKey("commands.id"), default=None)
    status: Mapped[OtaStatus] = mapped_column(_status_enum(OtaStatus), default=OtaStatus.PENDING)
    progress: Mapped[float | None] = mapped_column(Float, default=None)
    last_error: Mapped[str | None] = mapped_column(String(1024), default=None)
    requested_by: Mapped[int | None] = mapped_column(default=None)
    sent_at: Mapped[datetime | None] = mapped_column(default=None)
    downloading_at: Mapped[datetime | None] = mapped_column(default=None)
    applied_at: Mapped[datetime | None] = mapped_column(default=None)
    failed_at: Mapped[datetime | None] = mapped_column(default=None)

    __table_args__ = (
        Index("ix_ota_jobs_device_created", "device_id", "created_at"),
        Index("ix_ota_jobs_status_updated", "status", "updated_at"),
    )


class SensorReading(Base):
    __tablename__ = "sensor_readings"

    id: Mapped[int] = mapped_column(primary_key=True)
    device_id: Mapped[int] = mapped_column(ForeignKey("devices.id", ondelete="CASCADE"))
    timestamp: Mapped[datetime]
    current: Mapped[float]
    gas_ppm: Mapped[float]
    flame: Mapped[bool]
    bin_level: Mapped[float]
    voltage_v: Mapped[float | None] = mapped_column(default=None)
    current_a: Mapped[float | None] = mapped_column(default=None)
    frequency_hz: Mapped[float | None] = mapped_column(default=None)
    power_factor: Mapped[float | None] = mapped_column(default=None)
    power_w: Mapped[float | None] = mapped_column(default=None)
    energy_kwh: Mapped[float | None] = mapped_column(default=None)
    distance_cm: Mapped[float | None] = mapped_column(default=None)

    __table_args__ = (Index("ix_sensor_readings_device_ts", "device_id", "timestamp"),)


class AlarmEvent(Base):
    __tablename__ = "alarm_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    device_id: Mapped[int] = mapped_column(ForeignKey("devices.id", ondelete="CASCADE"))
    home_id: Mapped[int | None] = mapped_column(default=None)
    sensor_reading_id: Mapped[int | None] = mapped_column(
        ForeignKey("sensor_readings.id", ondelete="SET NULL"), default=None
    )
    type: Mapped[AlarmType] = mapped_column(_status_enum(AlarmType))
    severity: Mapped[AlarmSeverity] = mapped_column(_status_enum(AlarmSeverity))
    source: Mapped[AlarmSource] = mapped_column(_status_enum(AlarmSource), default=AlarmSource.DEVICE)
    message: Mapped[str] = mapped_column(String(200))
    triggered_at: Mapped[datetime] = mapped_column(server_default=func.now())

    __table_args__ = (Index("ix_alarm_events_dedup", "device_id", "type", "source", "triggered_at"),)
