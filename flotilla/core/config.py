"""
Flotilla Configuration Management

Centralized configuration for the orchestration engine with:
- Environment-based configuration
- Type-safe settings with Pydantic
- JSON file loading and saving
- A process-wide configuration instance
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels for Flotilla."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class OrchestrationConfig(BaseModel):
    """Configuration for rolling mutations and stability polling."""
    stability_timeout: float = 60.0  # seconds to wait for a predicate to converge
    poll_interval: float = 0.25  # seconds between stability evaluations
    max_poll_interval: float = 5.0
    backoff_strategy: Literal["fixed", "linear", "exponential", "exponential_jitter"] = "fixed"
    stability_precheck: bool = True  # evaluate stability before the first replacement

    @field_validator("stability_timeout", "poll_interval", "max_poll_interval")
    @classmethod
    def non_negative(cls, v: float) -> float:
        """Reject negative durations."""
        if v < 0:
            raise ValueError("durations must not be negative")
        return v


class LocalPlatformConfig(BaseModel):
    """Configuration for processes launched on the local machine."""
    close_timeout: float = 10.0  # grace period before a process tree is killed
    inherit_output: bool = False  # share stdout/stderr with the parent instead of discarding


class FlotillaConfig(BaseSettings):
    """
    Main Flotilla Configuration

    Loads configuration from environment variables and/or config files.
    Environment variables are prefixed with FLOTILLA_
    (e.g., FLOTILLA_ORCHESTRATION__POLL_INTERVAL=0.5)
    """

    log_level: LogLevel = LogLevel.INFO
    log_format: Literal["json", "console"] = "console"

    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
    local: LocalPlatformConfig = Field(default_factory=LocalPlatformConfig)

    model_config = {
        "env_prefix": "FLOTILLA_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @classmethod
    def from_file(cls, config_path: Path) -> "FlotillaConfig":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)


# Global configuration instance (lazy loaded)
_config: Optional[FlotillaConfig] = None


def get_config() -> FlotillaConfig:
    """Get the global Flotilla configuration instance."""
    global _config
    if _config is None:
        _config = FlotillaConfig()
    return _config


def set_config(config: FlotillaConfig) -> None:
    """Set the global Flotilla configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None
