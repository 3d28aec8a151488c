"""Typed wire payloads exchanged with devices.

Uses msgspec.Struct for zero-copy deserialization with built-in validation.
Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, TypeVar

import msgspec

from ..const import MAX_EPOCH_MS, MAX_RECORD_ID

__all__ = [
    "AckPayload",
    "CommandEnvelope",
    "CredentialsPayload",
    "HeartbeatPayload",
    "OtaProgressPayload",
    "PayloadValidationError",
    "RegistrationRequestPayload",
    "TelemetryData",
    "TelemetryPayload",
    "decode_payload",
    "encode_payload",
]

_MAX_ERROR_LEN = 1024
_MAX_KEY_LEN = 256

DeviceKey = Annotated[str, msgspec.Meta(min_length=1, max_length=_MAX_KEY_LEN)]
PositiveId = Annotated[int, msgspec.Meta(gt=0, le=MAX_RECORD_ID)]
ErrorText = Annotated[str, msgspec.Meta(max_length=_MAX_ERROR_LEN)]

T = TypeVar("T")


class PayloadValidationError(ValueError):
    """Raised when an inbound MQTT payload cannot be validated."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def decode_payload(payload: bytes, type_: type[T]) -> T:
    """Decode a JSON payload into *type_*, normalising msgspec errors."""
    if not payload:
        raise PayloadValidationError("payload is empty")
    try:
        return msgspec.json.decode(payload, type=type_)
    except msgspec.ValidationError as exc:
        raise PayloadValidationError(str(exc)) from exc
    except msgspec.DecodeError as exc:
        raise PayloadValidationError(f"malformed JSON: {exc}") from exc


def encode_payload(value: Any) -> bytes:
    return msgspec.json.encode(value)


# --- Device -> bridge ---


class AckPayload(msgspec.Struct, frozen=True, rename="camel"):
    """``{commandId, status: ACKED|FAILED, error?}`` on commands/ack."""

    command_id: PositiveId
    status: Literal["ACKED", "FAILED"]
    error: ErrorText | None = None


class HeartbeatPayload(msgspec.Struct, frozen=True, rename="camel"):
    device_key: DeviceKey
    mqtt_client_id: Annotated[str, msgspec.Meta(max_length=256)] | None = None


class TelemetryData(msgspec.Struct, frozen=True, rename="camel"):
    current: float
    gas_ppm: float
    flame: bool
    bin_level: float
    voltage_v: float | None = None
    current_a: float | None = None
    frequency_hz: float | None = None
    power_factor: float | None = None
    power_w: float | None = None
    energy_kwh: float | None = None
    distance_cm: float | None = None


class TelemetryPayload(msgspec.Struct, frozen=True, rename="camel"):
    """``{deviceKey, ts?, data:{...}}``; ``ts`` is epoch milliseconds."""

    device_key: DeviceKey
    data: TelemetryData
    ts: Annotated[int, msgspec.Meta(ge=0, le=MAX_EPOCH_MS)] | None = None


class OtaProgressPayload(msgspec.Struct, frozen=True, rename="camel"):
    """``{otaJobId, status, progress?, error?}`` on ota/progress.

    ``status`` is kept as a plain string so unknown values can be told apart
    from malformed payloads in the logs.
    """

    ota_job_id: PositiveId
    status: str
    progress: float | None = None
    error: ErrorText | None = None

    @property
    def progress_in_range(self) -> float | None:
        """Reported progress if within [0, 1], else None."""
        if self.progress is None or not 0.0 <= self.progress <= 1.0:
            return None
        return self.progress


class RegistrationRequestPayload(msgspec.Struct, frozen=True):
    mac: str
    type: str
    firmware: str
    ip: str


# --- Bridge -> device ---


class CommandEnvelope(msgspec.Struct, frozen=True, rename="camel"):
    """``{commandId, type, payload}`` published on a device's command topic."""

    command_id: int
    type: str
    payload: dict[str, Any]


class CredentialsPayload(msgspec.Struct, frozen=True, rename="camel"):
    device_id: int
    device_key: str
