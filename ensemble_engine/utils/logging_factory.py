"""Centralized logging factory for consistent logger setup across the engine.

This module provides a singleton-based logging factory. It handles:
- One-time configuration of the root logger
- Rich console output (or a plain stream handler when disabled)
- An optional log file
- Verbosity control for the engine's loggers

Usage:
    # Explicit initialization (optional - auto-initializes on first use)
    LoggingFactory.initialize(level=logging.INFO, log_file=Path("logs/engine.log"))

    # Or from engine settings
    LoggingFactory.initialize_from_config(get_engine_config())

    logger = get_logger(__name__)
    logger.info("Ensemble started")
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional, Union

from rich.logging import RichHandler

PACKAGE_LOGGER = "ensemble_engine"
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LoggingFactory:
    """Factory for creating and configuring loggers consistently.

    Initialization happens once; later initialize() calls are ignored until
    reset() is called.

    Class Attributes:
        _initialized: Flag to ensure single initialization
        _handlers: Handlers installed on the root logger by this factory
    """

    _initialized = False
    _handlers: List[logging.Handler] = []

    @classmethod
    def initialize(
        cls,
        level: Union[int, str] = logging.INFO,
        format_string: Optional[str] = None,
        log_file: Optional[Union[str, Path]] = None,
        rich_output: bool = True,
    ) -> None:
        """Initialize the logging system once for the process.

        Args:
            level: Root logger level (int or level name)
            format_string: Format for plain console and file output
            log_file: Optional log file; parent directories are created
            rich_output: Use rich's RichHandler for the console
        """
        if cls._initialized:
            return

        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
            if not isinstance(level, int):
                level = logging.INFO
        formatter = logging.Formatter(format_string or DEFAULT_FORMAT)

        handlers: List[logging.Handler] = []
        if rich_output:
            handlers.append(RichHandler(show_time=True, show_path=False, rich_tracebacks=True))
        else:
            console = logging.StreamHandler()
            console.setFormatter(formatter)
            handlers.append(console)

        if log_file:
            path = Path(log_file)
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)

        root = logging.getLogger()
        for handler in handlers:
            root.addHandler(handler)
        root.setLevel(level)

        cls._handlers = handlers
        cls._initialized = True

    @classmethod
    def initialize_from_config(cls, config: Any) -> None:
        """Initialize from an EngineConfig (log_level, log_format, log_file, rich_logging)."""
        cls.initialize(
            level=config.log_level,
            format_string=config.log_format,
            log_file=config.log_file,
            rich_output=config.rich_logging,
        )

    @classmethod
    def reset(cls) -> None:
        """Remove the handlers installed by initialize() and allow re-initialization."""
        root = logging.getLogger()
        for handler in cls._handlers:
            root.removeHandler(handler)
            handler.close()
        cls._handlers = []
        cls._initialized = False

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Get a logger, initializing with defaults on first use.

        Args:
            name: Module name for the logger, usually ``__name__``

        Returns:
            Configured logger instance
        """
        if not cls._initialized:
            cls.initialize()
        return logging.getLogger(name)

    @classmethod
    def set_level(cls, name: str, level: int) -> None:
        logging.getLogger(name).setLevel(level)

    @classmethod
    def configure_verbose(cls, verbose: bool = False) -> None:
        """Switch the root and engine loggers between DEBUG and INFO."""
        level = logging.DEBUG if verbose else logging.INFO
        logging.getLogger().setLevel(level)
        logging.getLogger(PACKAGE_LOGGER).setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger for the given module name."""
    return LoggingFactory.get_logger(name)
