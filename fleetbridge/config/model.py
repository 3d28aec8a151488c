"""Runtime configuration model for the Fleet Bridge daemon."""

from __future__ import annotations

from dataclasses import dataclass, field

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
    DEFAULT_OTA_PROGRESS_TERMINAL_GUARD,
    DEFAULT_OTA_SWEEP_INTERVAL_MS,
    DEFAULT_OTA_TIMEOUT_MS,
    DEFAULT_PUBLISH_BACKOFF_MS,
    DEFAULT_PUBLISH_RETRIES,
    DEFAULT_RECONNECT_DELAY,
    DEFAULT_SWEEP_BATCH_LIMIT,
)


def _require_positive(name: str, value: int | float) -> None:
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero (got {value})")


def _require_non_negative(name: str, value: int | float) -> None:
    if value < 0:
        raise ValueError(f"{name} must be zero or greater (got {value})")


@dataclass(slots=True)
class RuntimeConfig:
    """Strongly typed configuration for the daemon.

    Durations keep the millisecond unit of the environment keys they come
    from; the ``*_seconds`` properties convert for asyncio consumers.
    """

    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_tls: bool = False
    mqtt_user: str | None = None
    mqtt_pass: str | None = field(default=None, repr=False)
    mqtt_client_id: str = DEFAULT_MQTT_CLIENT_ID
    mqtt_keepalive: int = DEFAULT_MQTT_KEEPALIVE
    mqtt_clean: bool = DEFAULT_MQTT_CLEAN
    mqtt_cafile: str | None = None
    mqtt_certfile: str | None = None
    mqtt_keyfile: str | None = None
    mqtt_tls_insecure: bool = DEFAULT_MQTT_TLS_INSECURE
    mqtt_inbound_queue_limit: int = DEFAULT_MQTT_INBOUND_QUEUE_LIMIT
    reconnect_delay: int = DEFAULT_RECONNECT_DELAY

    publish_retries: int = DEFAULT_PUBLISH_RETRIES
    publish_backoff_ms: tuple[int, ...] = DEFAULT_PUBLISH_BACKOFF_MS

    command_ack_timeout_ms: int = DEFAULT_COMMAND_ACK_TIMEOUT_MS
    command_timeout_sweep_interval_ms: int = DEFAULT_COMMAND_TIMEOUT_SWEEP_INTERVAL_MS
    device_offline_threshold_ms: int = DEFAULT_DEVICE_OFFLINE_THRESHOLD_MS
    device_offline_sweep_interval_ms: int = DEFAULT_DEVICE_OFFLINE_SWEEP_INTERVAL_MS
    ota_timeout_ms: int = DEFAULT_OTA_TIMEOUT_MS
    ota_sweep_interval_ms: int = DEFAULT_OTA_SWEEP_INTERVAL_MS
    ota_progress_terminal_guard: bool = DEFAULT_OTA_PROGRESS_TERMINAL_GUARD
    sweep_batch_limit: int = DEFAULT_SWEEP_BATCH_LIMIT

    alarm_dedup_window_ms: int = DEFAULT_ALARM_DEDUP_WINDOW_MS
    alarm_gas_ppm_threshold: float = DEFAULT_ALARM_GAS_PPM_THRESHOLD
    alarm_bin_level_threshold: float = DEFAULT_ALARM_BIN_LEVEL_THRESHOLD
    power_current_threshold: float | None = None

    database_url: str = field(default=DEFAULT_DATABASE_URL, repr=False)
    database_create_schema: bool = DEFAULT_DATABASE_CREATE_SCHEMA
    firmware_base_url: str = DEFAULT_FIRMWARE_BASE_URL

    debug_logging: bool = DEFAULT_DEBUG_LOGGING
    metrics_enabled: bool = DEFAULT_METRICS_ENABLED
    metrics_host: str = DEFAULT_METRICS_HOST
    metrics_port: int = DEFAULT_METRICS_PORT

    def __post_init__(self) -> None:
        _require_positive("mqtt_port", self.mqtt_port)
        _require_positive("mqtt_keepalive", self.mqtt_keepalive)
        _require_positive("mqtt_inbound_queue_limit", self.mqtt_inbound_queue_limit)
        _require_non_negative("publish_retries", self.publish_retries)
        for delay in self.publish_backoff_ms:
            _require_non_negative("publish_backoff_ms", delay)
        _require_positive("command_ack_timeout_ms", self.command_ack_timeout_ms)
        _require_positive("command_timeout_sweep_interval_ms", self.command_timeout_sweep_interval_ms)
        _require_positive("device_offline_threshold_ms", self.device_offline_threshold_ms)
        _require_positive("device_offline_sweep_interval_ms", self.device_offline_sweep_interval_ms)
        _require_positive("ota_timeout_ms", self.ota_timeout_ms)
        _require_positive("ota_sweep_interval_ms", self.ota_sweep_interval_ms)
        _require_positive("sweep_batch_limit", self.sweep_batch_limit)
        _require_positive("alarm_dedup_window_ms", self.alarm_dedup_window_ms)
        if self.power_current_threshold is not None:
            _require_positive("power_current_threshold", self.power_current_threshold)
        self.publish_backoff_ms = tuple(self.publish_backoff_ms)

    @property
    def tls_enabled(self) -> bool:
        return self.mqtt_tls

    @property
    def publish_backoff_seconds(self) -> tuple[float, ...]:
        return tuple(delay / 1000.0 for delay in self.publish_backoff_ms)

    @property
    def command_timeout_sweep_interval_seconds(self) -> float:
        return self.command_timeout_sweep_interval_ms / 1000.0

    @property
    def device_offline_sweep_interval_seconds(self) -> float:
        return self.device_offline_sweep_interval_ms / 1000.0

    @property
    def ota_sweep_interval_seconds(self) -> float:
        return self.ota_sweep_interval_ms / 1000.0
