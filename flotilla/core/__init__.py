"""Flotilla Core Module - configuration and logging."""

from flotilla.core.config import (
    FlotillaConfig,
    LocalPlatformConfig,
    LogLevel,
    OrchestrationConfig,
    get_config,
    reset_config,
    set_config,
)
from flotilla.core.logging import setup_logging

__all__ = [
    "FlotillaConfig",
    "LocalPlatformConfig",
    "LogLevel",
    "OrchestrationConfig",
    "get_config",
    "reset_config",
    "set_config",
    "setup_logging",
]
