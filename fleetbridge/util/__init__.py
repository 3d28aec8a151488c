"""General-purpose utilities for Fleet Bridge."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone

__all__ = [
    "epoch_ms",
    "from_epoch_ms",
    "log_payload",
    "normalize_mac",
]

_MAC_SEPARATORS = re.compile(r"[:\-]")
_PAYLOAD_PREVIEW_BYTES = 256


def log_payload(logger_instance: logging.Logger, level: int, label: str, data: bytes) -> None:
    """Log an inbound/outbound payload preview.

    Device payloads are JSON text; anything that does not decode is shown in hex
    so binary garbage on a topic is still diagnosable.
    """
    if not logger_instance.isEnabledFor(level):
        return

    preview = data[:_PAYLOAD_PREVIEW_BYTES]
    try:
        text = preview.decode("utf-8")
    except UnicodeDecodeError:
        text = f"[{preview.hex(' ').upper()}]"
    suffix = "..." if len(data) > _PAYLOAD_PREVIEW_BYTES else ""
    logger_instance.log(level, "[PAYLOAD] %s: %s%s", label, text, suffix)


def normalize_mac(mac: str) -> str:
    """Strip separators and upper-case a MAC address (AA:bb-CC... -> AABBCC...)."""
    return _MAC_SEPARATORS.sub("", mac).upper()


def epoch_ms() -> int:
    return time.time_ns() // 1_000_000


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
