"""AgentWire Configuration System.

Layered YAML configuration with Pydantic validation. Supports a system
config file, environment variables and in-memory runtime overrides.

Config Layer Priority (highest to lowest):
1. Runtime overrides (in-memory)
2. System config (~/.agentwire/config.yaml)
3. Environment variables (AGENTWIRE_ prefix, ``__`` for nesting),
   including those loaded from ~/.agentwire/.env
4. Defaults (defined in Pydantic models)

The YAML file and runtime overrides are passed to Settings as init
arguments, which pydantic-settings ranks above the environment; nested
sections are merged key by key.

Usage:
    from agentwire.core.config import get_settings

    settings = get_settings()
    print(settings.queue.max_in_flight)  # 64 (default)
"""

from __future__ import annotations

import threading
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, PositiveFloat, PositiveInt, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentwire.core.exceptions import ConfigurationError


DEFAULT_BASE_PATH = "~/.agentwire"


# =============================================================================
# Sub-configuration Models (nested sections)
# =============================================================================


class AgentConfig(BaseModel):
    """Agent subprocess launch configuration."""

    command: str = "claude"
    args: List[str] = Field(
        default_factory=lambda: ["--print", "--output-format", "stream-json", "--verbose"]
    )
    env: Dict[str, str] = Field(default_factory=dict)
    graceful_timeout: PositiveFloat = 5.0  # seconds between SIGTERM and SIGKILL
    run_timeout: Optional[PositiveFloat] = None  # seconds
    stream_limit: PositiveInt = 16 * 1024 * 1024  # max bytes per output line
    line_buffer: PositiveInt = 256  # output lines held before reading pauses


class QueueConfig(BaseModel):
    """Message queue delivery configuration.

    Redelivery of an unacknowledged envelope happens ``ack_timeout`` plus
    ``min(base_delay * 2 ** (attempt - 1), max_delay)`` seconds after its
    last attempt, until ``max_attempts`` attempts have been made.
    """

    max_in_flight: PositiveInt = 64
    max_attempts: PositiveInt = 5
    ack_timeout: float = Field(default=10.0, ge=0)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    max_retained: PositiveInt = 1000
    drain_timeout: float = Field(default=2.0, ge=0)


class ManagerConfig(BaseModel):
    """Session manager limits."""

    max_concurrent_sessions: PositiveInt = 5
    max_history: PositiveInt = 50


class StorageConfig(BaseModel):
    """Storage configuration."""

    base_path: str = DEFAULT_BASE_PATH


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    output: str = "stderr"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate renderer name."""
        if v not in {"json", "console"}:
            raise ValueError(f"Invalid log format: {v}. Must be 'json' or 'console'")
        return v

    @field_validator("output")
    @classmethod
    def validate_output(cls, v: str) -> str:
        """Validate output stream name."""
        if v not in {"stdout", "stderr"}:
            raise ValueError(f"Invalid log output: {v}. Must be 'stdout' or 'stderr'")
        return v


# =============================================================================
# Main Settings
# =============================================================================


class Settings(BaseSettings):
    """Main settings class with layered configuration support.

    Loads configuration from:
    1. Environment variables (AGENTWIRE_ prefix)
    2. System config file (~/.agentwire/config.yaml)
    3. Defaults defined in Pydantic models
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENTWIRE_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    agent: AgentConfig = Field(default_factory=AgentConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    manager: ManagerConfig = Field(default_factory=ManagerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging_config: LoggingConfig = Field(
        default_factory=LoggingConfig, alias="logging"
    )

    @property
    def logging(self) -> LoggingConfig:
        """Alias for logging_config to match YAML key and common usage."""
        return self.logging_config


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def load_yaml_file(path: Path) -> Dict[str, Any]:
    """Load and parse a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as dictionary.

    Raises:
        ConfigurationError: If file cannot be read, parsed, or is not a mapping.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(
            config_path=str(path),
            message=f"Configuration file not found: {path}",
        )
    except yaml.YAMLError as e:
        raise ConfigurationError(
            config_path=str(path),
            message=f"Invalid YAML in {path}: {e}",
        )

    if not content:
        return {}
    if not isinstance(content, dict):
        raise ConfigurationError(
            config_path=str(path),
            expected_type="mapping",
            message=f"Top level of {path} must be a mapping",
        )
    return content


def load_system_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load system configuration from YAML file.

    Args:
        path: Optional path to config file. Defaults to ~/.agentwire/config.yaml.

    Returns:
        System configuration dictionary (empty if the default file is absent).

    Raises:
        ConfigurationError: If file cannot be loaded.
    """
    if path is None:
        path = Path(DEFAULT_BASE_PATH) / "config.yaml"

    path = Path(path).expanduser()

    if not path.exists():
        return {}

    return load_yaml_file(path)


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge multiple configuration dictionaries.

    Later configs override earlier ones.
    """
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = merge_configs(result[key], value)
            else:
                result[key] = value

    return result


def create_settings(
    system_config_path: Optional[Path] = None,
    runtime_overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Create a Settings instance with layered configuration.

    Args:
        system_config_path: Optional path to system config file.
        runtime_overrides: Optional runtime overrides dictionary.

    Returns:
        Configured Settings instance.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    if system_config_path:
        config_base = Path(system_config_path).expanduser().parent
    else:
        config_base = Path(DEFAULT_BASE_PATH).expanduser()

    env_path = config_base / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    merged = load_system_config(system_config_path)
    if runtime_overrides:
        merged = merge_configs(merged, runtime_overrides)

    try:
        return Settings(**merged)
    except Exception as e:
        raise ConfigurationError(
            config_path=str(system_config_path or f"{DEFAULT_BASE_PATH}/config.yaml"),
            message=f"Configuration validation failed: {e}",
        ) from e


# =============================================================================
# Singleton Settings Access
# =============================================================================


class _SettingsHolder:
    """Thread-safe singleton holder for Settings instance."""

    _instance: Optional[Settings] = None
    _lock: threading.Lock = threading.Lock()

    @classmethod
    def get(cls, force_reload: bool = False, **kwargs: Any) -> Settings:
        """Get or create the Settings singleton."""
        if cls._instance is None or force_reload:
            with cls._lock:
                # Double-check locking
                if cls._instance is None or force_reload:  # pragma: no cover
                    cls._instance = create_settings(**kwargs)
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton (for testing)."""
        with cls._lock:
            cls._instance = None


def get_settings(
    force_reload: bool = False,
    system_config_path: Optional[Path] = None,
    runtime_overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Get the global Settings singleton.

    Settings are loaded once and cached for subsequent calls.

    Args:
        force_reload: If True, reload settings from files.
        system_config_path: Optional path to system config file.
        runtime_overrides: Optional runtime overrides.

    Returns:
        Settings instance.
    """
    if not force_reload and _SettingsHolder._instance is not None:
        if system_config_path is not None or runtime_overrides is not None:
            warnings.warn(
                "Arguments provided to get_settings() are ignored because "
                "singleton is already initialized. Use force_reload=True "
                "to apply new configuration.",
                RuntimeWarning,
                stacklevel=2,
            )

    return _SettingsHolder.get(
        force_reload=force_reload,
        system_config_path=system_config_path,
        runtime_overrides=runtime_overrides,
    )


def reset_settings() -> None:
    """Reset the settings singleton (for testing)."""
    _SettingsHolder.reset()
