"""Engine configuration: logging, result cache and execution settings."""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Mapping, Optional

from ..cache.keys import DEFAULT_TEXT_FIELDS, DEFAULT_URL_FIELDS
from .base import BaseConfig, ConfigurationSchema

logger = logging.getLogger(__name__)

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class EngineConfig(BaseConfig):
    """Settings for the ensemble engine.

    Every field reads ``ENSEMBLE_<FIELD>`` from the environment (after a
    ``.env`` file is loaded), unless an explicit overlay sets it.
    """

    def __init__(self):
        """Initialize engine configuration."""
        super().__init__()

        # Logging
        self.log_level = str(self.get_value("LOG_LEVEL", "INFO")).upper()
        self.log_format = self.get_value(
            "LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        self.log_file = self.get_value("LOG_FILE")
        self.rich_logging = self.parse_bool(self.get_value("RICH_LOGGING", "true"))

        # Result cache
        self.cache_enabled = self.parse_bool(self.get_value("CACHE_ENABLED", "true"))
        self.cache_default_ttl = float(self.get_value("CACHE_DEFAULT_TTL", "3600"))
        self.cache_key_prefix = self.get_value("CACHE_KEY_PREFIX", "ensemble:")
        self.cache_max_entries = int(self.get_value("CACHE_MAX_ENTRIES", "1024"))
        self.cache_text_fields = self.parse_list(
            self.get_value("CACHE_TEXT_FIELDS", list(DEFAULT_TEXT_FIELDS))
        )
        self.cache_url_fields = self.parse_list(
            self.get_value("CACHE_URL_FIELDS", list(DEFAULT_URL_FIELDS))
        )

        # Execution
        self.env_prefix = self.get_value("ENV_PREFIX", "ENSEMBLE_ENV_")
        self.max_parallel = int(self.get_value("MAX_PARALLEL", "8"))

    def environment_bindings(self, environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Collect the ``env`` scope for ensemble runs.

        Variables starting with the configured prefix are exposed with the
        prefix stripped: ``ENSEMBLE_ENV_API_BASE`` becomes ``${env.API_BASE}``.
        """
        environ = os.environ if environ is None else environ
        prefix = self.env_prefix
        if not prefix:
            return dict(environ)
        return {
            name[len(prefix):]: value
            for name, value in environ.items()
            if name.startswith(prefix) and len(name) > len(prefix)
        }

    def get_schema(self) -> ConfigurationSchema:
        return ConfigurationSchema(
            name="EngineConfig",
            required_fields={"log_level", "cache_default_ttl", "max_parallel"},
            validators={
                "log_level": lambda x: x in LOG_LEVELS,
                "cache_default_ttl": lambda x: x > 0,
                "cache_max_entries": lambda x: x > 0,
                "max_parallel": lambda x: x > 0,
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "log_level": self.log_level,
            "log_format": self.log_format,
            "log_file": self.log_file,
            "rich_logging": self.rich_logging,
            "cache_enabled": self.cache_enabled,
            "cache_default_ttl": self.cache_default_ttl,
            "cache_key_prefix": self.cache_key_prefix,
            "cache_max_entries": self.cache_max_entries,
            "cache_text_fields": self.cache_text_fields,
            "cache_url_fields": self.cache_url_fields,
            "env_prefix": self.env_prefix,
            "max_parallel": self.max_parallel,
        }


def get_engine_config() -> EngineConfig:
    """Get engine configuration instance."""
    return EngineConfig.get_instance()
