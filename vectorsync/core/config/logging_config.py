"""Logging configuration models for vectorsync."""

import os
import sys
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, field_validator

_VALID_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


class FileLoggingConfig(BaseModel):
    """Configuration for file-based logging."""

    enabled: bool = Field(default=False, description="Enable file logging")
    path: str = Field(default="vectorsync.log", description="Path to log file")
    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    rotation: str = Field(default="10 MB", description="Log rotation size (e.g., '10 MB', '1 week')")
    retention: str = Field(default="1 week", description="Log retention period (e.g., '1 week', '30 days')")
    format: str = Field(
        default="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        description="Log message format",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate logging level."""
        if v.upper() not in _VALID_LEVELS:
            raise ValueError(f"Invalid log level '{v}'. Must be one of: {', '.join(sorted(_VALID_LEVELS))}")
        return v.upper()

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate log file path."""
        if not v.strip():
            raise ValueError("Log file path cannot be empty")
        return v


class LoggingConfig(BaseModel):
    """Top-level logging configuration."""

    file: FileLoggingConfig = Field(default_factory=FileLoggingConfig)
    console_level: str = Field(default="WARNING", description="Console logging level (DEBUG, INFO, WARNING, ERROR)")

    @field_validator("console_level")
    @classmethod
    def validate_console_level(cls, v: str) -> str:
        """Validate console logging level."""
        if v.upper() not in _VALID_LEVELS:
            raise ValueError(f"Invalid console log level '{v}'. Must be one of: {', '.join(sorted(_VALID_LEVELS))}")
        return v.upper()

    @classmethod
    def load_from_env(cls) -> dict[str, Any]:
        config: dict[str, Any] = {}
        if level := os.getenv("VECTORSYNC_LOGGING__CONSOLE_LEVEL"):
            config["console_level"] = level
        file_config: dict[str, Any] = {}
        if path := os.getenv("VECTORSYNC_LOGGING__FILE__PATH"):
            file_config["enabled"] = True
            file_config["path"] = path
        if level := os.getenv("VECTORSYNC_LOGGING__FILE__LEVEL"):
            file_config["level"] = level
        if file_config:
            config["file"] = file_config
        return config

    @classmethod
    def extract_cli_overrides(cls, args: Any) -> dict[str, Any] | None:
        """Extract logging configuration overrides from CLI arguments.

        Args:
            args: Parsed command line arguments

        Returns:
            Dictionary of logging configuration overrides, or None if no overrides
        """
        overrides: dict[str, Any] = {}

        file_overrides: dict[str, Any] = {}
        if hasattr(args, "log_file") and args.log_file:
            file_overrides["enabled"] = True
            file_overrides["path"] = args.log_file
        if hasattr(args, "log_level") and args.log_level:
            file_overrides["level"] = args.log_level
        if file_overrides:
            overrides["file"] = file_overrides

        if getattr(args, "verbose", False):
            overrides["console_level"] = "DEBUG"

        return overrides if overrides else None


def configure_logging(config: LoggingConfig) -> list[int]:
    """Replace loguru's default sink with the configured console and file sinks.

    Returns:
        Handler ids of the installed sinks
    """
    logger.remove()
    handler_ids = [logger.add(sys.stderr, level=config.console_level)]
    if config.file.enabled:
        Path(config.file.path).parent.mkdir(parents=True, exist_ok=True)
        handler_ids.append(
            logger.add(
                config.file.path,
                level=config.file.level,
                rotation=config.file.rotation,
                retention=config.file.retention,
                format=config.file.format,
                enqueue=True,
            )
        )
    return handler_ids
