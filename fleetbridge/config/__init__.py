"""Configuration helpers for the Fleet Bridge daemon."""

from .settings import RuntimeConfig, load_runtime_config

__all__ = ["RuntimeConfig", "load_runtime_config"]
