"""Configuration for the ensemble engine."""

from .base import BaseConfig, ConfigPriority, ConfigurationSchema
from .engine import EngineConfig, get_engine_config

__all__ = [
    "BaseConfig",
    "ConfigPriority",
    "ConfigurationSchema",
    "EngineConfig",
    "get_engine_config",
]
