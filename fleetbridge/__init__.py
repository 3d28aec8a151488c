"""Fleet Bridge package initialisation."""

__version__ = "1.0.0"

import logging
import sys

logger = logging.getLogger(__name__)


def _check_dependencies():
    """Refuse to start on a paho-mqtt 1.x install."""
    try:
        import paho.mqtt.client as mqtt

        # aiomqtt builds on the paho-mqtt 2.x callback API. A 1.x install
        # imports fine and then fails on the first connect.
        if not hasattr(mqtt, "CallbackAPIVersion"):
            logger.critical(
                "FATAL: Incompatible paho-mqtt version detected. "
                "Fleet Bridge requires paho-mqtt >= 2.0.0."
            )
            sys.exit(1)

    except ImportError:
        # If imports are missing entirely, Python will raise ImportError naturally later.
        pass


_check_dependencies()
