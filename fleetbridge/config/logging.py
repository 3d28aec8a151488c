"""Logging setup for the Fleet Bridge daemon.

Every record is rendered as one JSON object per line. The handler writes to
the local syslog socket when one exists (the daemon normally runs under a
service manager) and to stderr otherwise, or always when
``FLEETBRIDGE_LOG_STREAM`` is set.
"""

from __future__ import annotations

import enum
import logging
import os
from datetime import date, datetime, timezone
from logging.config import dictConfig
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Any

import msgspec

from .model import RuntimeConfig

LOG_STREAM_ENV = "FLEETBRIDGE_LOG_STREAM"
SYSLOG_SOCKETS = (Path("/dev/log"), Path("/var/run/log"))
SYSLOG_IDENT = "fleetbridge "

# Chatty at DEBUG; held at WARNING unless debug logging is on.
_NOISY_LOGGERS = ("aiomqtt", "sqlalchemy.engine", "asyncio")

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        # Device payloads can be arbitrary bytes.
        return bytes(value).hex(" ").upper()
    if isinstance(value, msgspec.Struct):
        return msgspec.to_builtins(value)
    return str(value)


class JsonLineFormatter(logging.Formatter):
    """Render a record as compact JSON with ``extra=`` fields under "extra"."""

    package_prefix = "fleetbridge."

    def format(self, record: logging.LogRecord) -> str:
        document: dict[str, Any] = {
            "ts": self._timestamp(record),
            "level": record.levelname,
            "logger": record.name.removeprefix(self.package_prefix),
            "message": record.getMessage(),
        }

        extra = {
            key: _jsonable(value)
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        if extra:
            document["extra"] = extra
        if record.exc_info:
            document["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            document["stack"] = self.formatStack(record.stack_info)

        return msgspec.json.encode(document).decode("utf-8")

    @staticmethod
    def _timestamp(record: logging.LogRecord) -> str:
        moment = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_log_handler() -> logging.Handler:
    if os.environ.get(LOG_STREAM_ENV):
        return logging.StreamHandler()

    socket_path = next((path for path in SYSLOG_SOCKETS if path.exists()), None)
    if socket_path is None:
        return logging.StreamHandler()

    handler = SysLogHandler(address=str(socket_path), facility=SysLogHandler.LOG_DAEMON)
    handler.ident = SYSLOG_IDENT
    return handler


def configure_logging(config: RuntimeConfig) -> None:
    """Install the JSON handler on the root logger."""
    level = "DEBUG" if config.debug_logging else "INFO"
    library_level = "DEBUG" if config.debug_logging else "WARNING"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": JsonLineFormatter}},
            "handlers": {
                "fleetbridge": {
                    "()": build_log_handler,
                    "level": level,
                    "formatter": "json",
                }
            },
            "loggers": {name: {"level": library_level} for name in _NOISY_LOGGERS},
            "root": {"level": level, "handlers": ["fleetbridge"]},
        }
    )

    logging.getLogger("fleetbridge").info("Logging configured at level %s", level)
