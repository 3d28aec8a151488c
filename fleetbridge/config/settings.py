"""Settings loader for the Fleet Bridge daemon.

Configuration is read from the process environment. Every key has a default so
the bridge starts with zero configuration against a local broker and database.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from marshmallow import ValidationError

from ..errors import ConfigurationError
from .model import RuntimeConfig
from .schema import RuntimeConfigSchema

logger = logging.getLogger("fleetbridge.config")

__all__ = ["RuntimeConfig", "load_runtime_config"]


def load_runtime_config(environ: Mapping[str, str] | None = None) -> RuntimeConfig:
    """Load and validate configuration from *environ* (default ``os.environ``)."""
    raw = dict(os.environ if environ is None else environ)
    try:
        config = RuntimeConfigSchema().load(raw)
    except ValidationError as exc:
        raise ConfigurationError(exc.normalized_messages()) from exc
    except ValueError as exc:
        # RuntimeConfig.__post_init__ guards
        raise ConfigurationError(str(exc)) from exc

    logger.debug("Loaded runtime configuration: %s", config)
    return config
