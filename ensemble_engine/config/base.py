"""Base configuration module for environment loading and overlay resolution."""
from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, Set, Type, TypeVar, Union

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "ENSEMBLE_"


class ConfigPriority(Enum):
    """Configuration priority levels for the overlay system."""

    DEFAULTS = 0
    FILE = 1
    ENVIRONMENT = 2
    EXPLICIT = 3


T = TypeVar("T", bound="BaseConfig")


@dataclass
class ConfigurationSchema:
    """Schema definition for configuration validation."""

    name: str
    required_fields: Set[str] = field(default_factory=set)
    validators: Dict[str, Callable[[Any], bool]] = field(default_factory=dict)

    def validate(self, config: Dict[str, Any]) -> bool:
        """Validate configuration against schema.

        Args:
            config: Configuration dictionary to validate

        Returns:
            True if valid

        Raises:
            ValueError: If validation fails
        """
        for field_name in self.required_fields:
            if field_name not in config:
                raise ValueError(f"Required field '{field_name}' missing in {self.name}")

        for field_name, validator_fn in self.validators.items():
            if field_name in config and not validator_fn(config[field_name]):
                raise ValueError(
                    f"Validation failed for field '{field_name}' in {self.name}: "
                    f"{config[field_name]!r}"
                )

        return True


class BaseConfig(ABC):
    """Abstract base class for configuration modules.

    Values are looked up by lowercase key across overlays, highest priority
    first: explicit overrides, then ``ENSEMBLE_<KEY>`` environment variables,
    then values loaded from a config file, then registered defaults.
    """

    _instances: Dict[Type, Any] = {}
    _lock = Lock()
    _config_overlays: Dict[ConfigPriority, Dict[str, Any]] = {}
    variable_prefix: str = ENV_PREFIX

    def __init__(self):
        """Initialize configuration with environment loading."""
        self._load_environment()
        self._schema: Optional[ConfigurationSchema] = None

    @classmethod
    def get_instance(cls: Type[T]) -> T:
        """Get singleton instance of configuration class (thread-safe)."""
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = cls()
        return cls._instances[cls]

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the cached singleton so the next get_instance() re-reads settings."""
        with cls._lock:
            cls._instances.pop(cls, None)

    def _load_environment(self) -> None:
        """Load a .env file from the working directory or its parent, if present."""
        for env_path in (Path(".env"), Path("../.env")):
            if env_path.exists():
                load_dotenv(env_path, override=False)
                logger.debug(f"Loaded environment from {env_path}")
                break

    @abstractmethod
    def get_schema(self) -> ConfigurationSchema:
        """Get configuration schema for validation."""
        pass

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        pass

    def validate(self) -> bool:
        """Validate configuration against schema.

        Raises:
            ValueError: If validation fails
        """
        if self._schema is None:
            self._schema = self.get_schema()
        return self._schema.validate(self.to_dict())

    @classmethod
    def set_overlay(cls, priority: ConfigPriority, config: Dict[str, Any]) -> None:
        """Set configuration overlay at specified priority.

        ENVIRONMENT is always read live from ``os.environ``; an overlay at that
        priority is consulted before the process environment.
        """
        cls._config_overlays[priority] = {key.lower(): value for key, value in config.items()}

    @classmethod
    def clear_overlays(cls) -> None:
        cls._config_overlays.clear()

    @classmethod
    def load_file_overlay(cls, path: Union[str, Path]) -> Dict[str, Any]:
        """Load a YAML or JSON settings file into the FILE overlay.

        Returns:
            The loaded settings

        Raises:
            ValueError: If the file does not contain a mapping
        """
        path = Path(path)
        text = path.read_text(encoding="utf-8")
        data = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        cls.set_overlay(ConfigPriority.FILE, data)
        logger.info(f"Loaded configuration overlay from {path}")
        return data

    @classmethod
    def get_value(cls, key: str, default: Any = None) -> Any:
        """Get configuration value with overlay priority.

        Args:
            key: Configuration key (case-insensitive, without prefix)
            default: Default value if not found

        Returns:
            Configuration value
        """
        name = key.lower()
        overlays = cls._config_overlays

        if name in overlays.get(ConfigPriority.EXPLICIT, {}):
            return overlays[ConfigPriority.EXPLICIT][name]
        if name in overlays.get(ConfigPriority.ENVIRONMENT, {}):
            return overlays[ConfigPriority.ENVIRONMENT][name]

        env_value = os.getenv(f"{cls.variable_prefix}{key.upper()}")
        if env_value is not None:
            return env_value

        for priority in (ConfigPriority.FILE, ConfigPriority.DEFAULTS):
            if name in overlays.get(priority, {}):
                return overlays[priority][name]

        return default

    @staticmethod
    def parse_bool(value: Any) -> bool:
        """Parse boolean value from various formats."""
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes", "on", "enabled")
        return bool(value)

    @staticmethod
    def parse_list(value: Any, delimiter: str = ",") -> list:
        """Parse list value from string or return as-is if already a list."""
        if isinstance(value, (list, tuple)):
            return list(value)
        if isinstance(value, str):
            return [item.strip() for item in value.split(delimiter) if item.strip()]
        return [value] if value is not None else []
