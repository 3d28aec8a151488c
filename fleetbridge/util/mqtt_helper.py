"""TLS setup for the broker connection."""

from __future__ import annotations

import logging
import ssl
from pathlib import Path

from fleetbridge.config.model import RuntimeConfig
from fleetbridge.const import MQTT_TLS_MIN_VERSION

logger = logging.getLogger("fleetbridge.util.mqtt")


def configure_tls_context(config: RuntimeConfig) -> ssl.SSLContext | None:
    """Return an SSLContext for an ``mqtts://`` broker, or None for plain TCP."""
    if not config.tls_enabled:
        return None

    try:
        cafile = config.mqtt_cafile
        if cafile and not Path(cafile).exists():
            raise RuntimeError(f"MQTT TLS CA file missing: {cafile}")
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=cafile or None)
        context.minimum_version = MQTT_TLS_MIN_VERSION

        if config.mqtt_tls_insecure:
            logger.warning("MQTT TLS hostname verification disabled (MQTT_TLS_INSECURE)")
            context.check_hostname = False

        if config.mqtt_certfile and config.mqtt_keyfile:
            context.load_cert_chain(config.mqtt_certfile, config.mqtt_keyfile)

        return context
    except (OSError, ssl.SSLError, ValueError) as exc:
        raise RuntimeError(f"TLS setup failed: {exc}") from exc
