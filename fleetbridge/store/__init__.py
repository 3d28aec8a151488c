"""Persistence for the device directory, firmware store, ledger and alarm sink."""

from .base import (
    AlarmCandidate,
    AlarmSink,
    CommandLedger,
    CommandRecord,
    DeviceDirectory,
    DeviceRecord,
    FirmwareRecord,
    FirmwareStore,
    OtaExpiry,
    OtaJobRecord,
)
from .database import create_engine, create_schema, create_session_factory
from .sql import SqlAlarmSink, SqlCommandLedger, SqlDeviceDirectory, SqlFirmwareStore

__all__ = [
    "AlarmCandidate",
    "AlarmSink",
    "CommandLedger",
    "CommandRecord",
    "DeviceDirectory",
    "DeviceRecord",
    "FirmwareRecord",
    "FirmwareStore",
    "OtaExpiry",
    "OtaJobRecord",
    "SqlAlarmSink",
    "SqlCommandLedger",
    "SqlDeviceDirectory",
    "SqlFirmwareStore",
    "create_engine",
    "create_schema",
    "create_session_factory",
]
