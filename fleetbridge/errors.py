"""Typed errors surfaced to callers of the bridge service.

Device-originated problems never reach this module: inbound payloads that fail
validation are dropped and logged by their handler. These exceptions are for
the request/response side (operator and backend callers) and map onto
HTTP-style status codes so a thin route layer can translate them verbatim.
"""

from __future__ import annotations

__all__ = [
    "BadRequestError",
    "BridgeError",
    "BusNotConnectedError",
    "ConfigurationError",
    "NotFoundError",
    "PublishFailedError",
]


class BridgeError(Exception):
    """Base class for errors reported to bridge callers."""

    http_status = 500

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class NotFoundError(BridgeError):
    """A device, release, command or OTA job does not exist."""

    http_status = 404


class BadRequestError(BridgeError):
    """The caller supplied arguments the bridge cannot act on."""

    http_status = 400


class PublishFailedError(BridgeError):
    """A publish exhausted its retry budget."""

    http_status = 502


class BusNotConnectedError(ConnectionError):
    """Raised by the transport when no broker session is ready."""


class ConfigurationError(ValueError):
    """Raised when the runtime environment holds invalid settings."""

    def __init__(self, messages: dict[str, list[str]] | str) -> None:
        self.messages = messages
        super().__init__(f"Invalid configuration: {messages}")
