"""Transport abstractions (MQTT) for the Fleet Bridge daemon."""

from .mqtt import MqttTransport

__all__ = ["MqttTransport"]
