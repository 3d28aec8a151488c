"""Marshmallow schema for RuntimeConfig validation.

Field ``data_key`` values are the environment variable names, so the schema
loads ``os.environ`` directly.
"""

from __future__ import annotations

from typing import Any, Dict
from urllib.parse import unquote, urlsplit

from marshmallow import EXCLUDE, Schema, ValidationError, fields, post_load, pre_load, validate, validates, validates_schema

from ..const import (
    DEFAULT_ALARM_BIN_LEVEL_THRESHOLD,
    DEFAULT_ALARM_DEDUP_WINDOW_MS,
    DEFAULT_ALARM_GAS_PPM_THRESHOLD,
    DEFAULT_COMMAND_ACK_TIMEOUT_MS,
    DEFAULT_COMMAND_TIMEOUT_SWEEP_INTERVAL_MS,
    DEFAULT_DATABASE_CREATE_SCHEMA,
    DEFAULT_DATABASE_URL,
    DEFAULT_DEBUG_LOGGING,
    DEFAULT_DEVICE_OFFLINE_SWEEP_INTERVAL_MS,
    DEFAULT_DEVICE_OFFLINE_THRESHOLD_MS,
    DEFAULT_FIRMWARE_BASE_URL,
    DEFAULT_METRICS_ENABLED,
    DEFAULT_METRICS_HOST,
    DEFAULT_METRICS_PORT,
    DEFAULT_MQTT_CLEAN,
    DEFAULT_MQTT_CLIENT_ID,
    DEFAULT_MQTT_INBOUND_QUEUE_LIMIT,
    DEFAULT_MQTT_KEEPALIVE,
    DEFAULT_MQTT_TLS_INSECURE,
    DEFAULT_MQTT_URL,
    DEFAULT_OTA_PROGRESS_TERMINAL_GUARD,
    DEFAULT_OTA_SWEEP_INTERVAL_MS,
    DEFAULT_OTA_TIMEOUT_MS,
    DEFAULT_PUBLISH_BACKOFF_MS,
    DEFAULT_PUBLISH_RETRIES,
    DEFAULT_RECONNECT_DELAY,
    DEFAULT_SWEEP_BATCH_LIMIT,
)
from .model import RuntimeConfig

_MQTT_SCHEMES = {
    "mqtt": (False, 1883),
    "tcp": (False, 1883),
    "mqtts": (True, 8883),
    "ssl": (True, 8883),
}


class RuntimeConfigSchema(Schema):
    """Declarative validation schema for Fleet Bridge configuration."""

    class Meta:
        unknown = EXCLUDE

    # MQTT
    mqtt_url = fields.Str(data_key="MQTT_URL", load_default=DEFAULT_MQTT_URL)
    mqtt_user = fields.Str(data_key="MQTT_USERNAME", load_default=None, allow_none=True)
    mqtt_pass = fields.Str(data_key="MQTT_PASSWORD", load_default=None, allow_none=True)
    mqtt_client_id = fields.Str(
        data_key="MQTT_CLIENT_ID",
        load_default=DEFAULT_MQTT_CLIENT_ID,
        validate=validate.Length(min=1, max=128),
    )
    mqtt_keepalive = fields.Int(
        data_key="MQTT_KEEPALIVE",
        load_default=DEFAULT_MQTT_KEEPALIVE,
        validate=validate.Range(min=1, max=65535),
    )
    mqtt_clean = fields.Bool(data_key="MQTT_CLEAN", load_default=DEFAULT_MQTT_CLEAN)
    mqtt_cafile = fields.Str(data_key="MQTT_CAFILE", load_default=None, allow_none=True)
    mqtt_certfile = fields.Str(data_key="MQTT_CERTFILE", load_default=None, allow_none=True)
    mqtt_keyfile = fields.Str(data_key="MQTT_KEYFILE", load_default=None, allow_none=True)
    mqtt_tls_insecure = fields.Bool(data_key="MQTT_TLS_INSECURE", load_default=DEFAULT_MQTT_TLS_INSECURE)
    mqtt_inbound_queue_limit = fields.Int(
        data_key="MQTT_INBOUND_QUEUE_LIMIT",
        load_default=DEFAULT_MQTT_INBOUND_QUEUE_LIMIT,
        validate=validate.Range(min=1),
    )
    reconnect_delay = fields.Int(
        data_key="MQTT_RECONNECT_DELAY",
        load_default=DEFAULT_RECONNECT_DELAY,
        validate=validate.Range(min=1),
    )

    # Publish retry
    publish_retries = fields.Int(
        data_key="MQTT_PUBLISH_RETRIES",
        load_default=DEFAULT_PUBLISH_RETRIES,
        validate=validate.Range(min=0, max=20),
    )
    publish_backoff_1_ms = fields.Int(
        data_key="MQTT_PUBLISH_BACKOFF_1_MS",
        load_default=DEFAULT_PUBLISH_BACKOFF_MS[0],
        validate=validate.Range(min=0),
    )
    publish_backoff_2_ms = fields.Int(
        data_key="MQTT_PUBLISH_BACKOFF_2_MS",
        load_default=DEFAULT_PUBLISH_BACKOFF_MS[1],
        validate=validate.Range(min=0),
    )
    publish_backoff_3_ms = fields.Int(
        data_key="MQTT_PUBLISH_BACKOFF_3_MS",
        load_default=DEFAULT_PUBLISH_BACKOFF_MS[2],
        validate=validate.Range(min=0),
    )

    # Sweepers
    command_ack_timeout_ms = fields.Int(
        data_key="COMMAND_ACK_TIMEOUT_MS",
        load_default=DEFAULT_COMMAND_ACK_TIMEOUT_MS,
        validate=validate.Range(min=1),
    )
    command_timeout_sweep_interval_ms = fields.Int(
        data_key="COMMAND_TIMEOUT_SWEEP_INTERVAL_MS",
        load_default=DEFAULT_COMMAND_TIMEOUT_SWEEP_INTERVAL_MS,
        validate=validate.Range(min=1),
    )
    device_offline_threshold_ms = fields.Int(
        data_key="DEVICE_OFFLINE_THRESHOLD_MS",
        load_default=DEFAULT_DEVICE_OFFLINE_THRESHOLD_MS,
        validate=validate.Range(min=1),
    )
    device_offline_sweep_interval_ms = fields.Int(
        data_key="DEVICE_OFFLINE_SWEEP_INTERVAL_MS",
        load_default=DEFAULT_DEVICE_OFFLINE_SWEEP_INTERVAL_MS,
        validate=validate.Range(min=1),
    )
    ota_timeout_ms = fields.Int(
        data_key="OTA_TIMEOUT_MS",
        load_default=DEFAULT_OTA_TIMEOUT_MS,
        validate=validate.Range(min=1),
    )
    ota_sweep_interval_ms = fields.Int(
        data_key="OTA_SWEEP_INTERVAL_MS",
        load_default=DEFAULT_OTA_SWEEP_INTERVAL_MS,
        validate=validate.Range(min=1),
    )
    ota_progress_terminal_guard = fields.Bool(
        data_key="OTA_PROGRESS_TERMINAL_GUARD",
        load_default=DEFAULT_OTA_PROGRESS_TERMINAL_GUARD,
    )
    sweep_batch_limit = fields.Int(
        data_key="SWEEP_BATCH_LIMIT",
        load_default=DEFAULT_SWEEP_BATCH_LIMIT,
        validate=validate.Range(min=1, max=10_000),
    )

    # Alarms
    alarm_dedup_window_ms = fields.Int(
        data_key="ALARM_DEDUP_WINDOW_MS",
        load_default=DEFAULT_ALARM_DEDUP_WINDOW_MS,
        validate=validate.Range(min=1),
    )
    alarm_gas_ppm_threshold = fields.Float(
        data_key="ALARM_GAS_PPM_THRESHOLD",
        load_default=DEFAULT_ALARM_GAS_PPM_THRESHOLD,
        validate=validate.Range(min=0.0),
    )
    alarm_bin_level_threshold = fields.Float(
        data_key="ALARM_BIN_LEVEL_THRESHOLD",
        load_default=DEFAULT_ALARM_BIN_LEVEL_THRESHOLD,
        validate=validate.Range(min=0.0, max=100.0),
    )
    power_current_threshold = fields.Float(
        data_key="POWER_CURRENT_THRESHOLD",
        load_default=None,
        allow_none=True,
        validate=validate.Range(min=0.0, min_inclusive=False),
    )

    # Store
    database_url = fields.Str(
        data_key="DATABASE_URL",
        load_default=DEFAULT_DATABASE_URL,
        validate=validate.Length(min=1),
    )
    database_create_schema = fields.Bool(data_key="DATABASE_CREATE_SCHEMA", load_default=DEFAULT_DATABASE_CREATE_SCHEMA)
    firmware_base_url = fields.Str(
        data_key="FIRMWARE_BASE_URL",
        load_default=DEFAULT_FIRMWARE_BASE_URL,
        validate=validate.Length(min=1),
    )

    # Observability
    debug_logging = fields.Bool(data_key="DEBUG", load_default=DEFAULT_DEBUG_LOGGING)
    metrics_enabled = fields.Bool(data_key="METRICS_ENABLED", load_default=DEFAULT_METRICS_ENABLED)
    metrics_host = fields.Str(data_key="METRICS_HOST", load_default=DEFAULT_METRICS_HOST)
    metrics_port = fields.Int(
        data_key="METRICS_PORT",
        load_default=DEFAULT_METRICS_PORT,
        validate=validate.Range(min=0, max=65535),
    )

    @pre_load
    def drop_blank_values(self, data: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        # `FOO=` in an env file means "unset", not "empty string".
        return {key: value for key, value in data.items() if not (isinstance(value, str) and not value.strip())}

    @validates("mqtt_url")
    def validate_mqtt_url(self, value: str, **kwargs: Any) -> None:
        parts = urlsplit(value)
        if parts.scheme not in _MQTT_SCHEMES:
            raise ValidationError(f"unsupported MQTT scheme '{parts.scheme}' (expected one of {sorted(_MQTT_SCHEMES)})")
        if not parts.hostname:
            raise ValidationError("MQTT_URL must include a host")
        try:
            port = parts.port
        except ValueError as exc:
            raise ValidationError(f"MQTT_URL has an invalid port: {exc}") from exc
        if port is not None and port <= 0:
            raise ValidationError("MQTT_URL port must be positive")

    @validates_schema
    def validate_mtls_pair(self, data: Dict[str, Any], **kwargs: Any) -> None:
        if bool(data.get("mqtt_certfile")) != bool(data.get("mqtt_keyfile")):
            raise ValidationError(
                "MQTT_CERTFILE and MQTT_KEYFILE must be provided together for mTLS",
                field_name="MQTT_CERTFILE",
            )

    @post_load
    def make_config(self, data: Dict[str, Any], **kwargs: Any) -> RuntimeConfig:
        parts = urlsplit(data.pop("mqtt_url"))
        tls, default_port = _MQTT_SCHEMES[parts.scheme]
        data["mqtt_host"] = parts.hostname or "localhost"
        data["mqtt_port"] = parts.port or default_port
        data["mqtt_tls"] = tls
        # Credentials embedded in the URL are used only when not set explicitly.
        if data.get("mqtt_user") is None and parts.username:
            data["mqtt_user"] = unquote(parts.username)
        if data.get("mqtt_pass") is None and parts.password:
            data["mqtt_pass"] = unquote(parts.password)

        data["publish_backoff_ms"] = (
            data.pop("publish_backoff_1_ms"),
            data.pop("publish_backoff_2_ms"),
            data.pop("publish_backoff_3_ms"),
        )
        return RuntimeConfig(**data)
