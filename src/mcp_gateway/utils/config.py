"""
Configuration management for MCP Gateway.

Hierarchical configuration loading with validation using Pydantic.
Values come from TOML files, then ``MCP_GATEWAY_*`` environment
variables, then explicit overrides.
"""

import os
from pathlib import Path
from typing import Any, List, Optional, Union

import toml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_gateway.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    enabled: bool = Field(default=True, description="Enable logging completely")
    level: str = Field(default="INFO", description="File logging level")
    console_level: str = Field(default="WARNING", description="Console logging level")
    format_type: str = Field(default="text", description="Log format (text/json)")
    file: Optional[str] = Field(default=None, description="Log file path")
    enable_rich: bool = Field(default=True, description="Enable Rich console output")
    max_bytes: int = Field(default=10 * 1024 * 1024, description="Max log file size")
    backup_count: int = Field(default=5, description="Number of backup files")
    suppress_http: bool = Field(default=True, description="Quiet HTTP client logging")

    @field_validator("level", "console_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate logging level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("format_type")
    @classmethod
    def validate_format_type(cls, v: str) -> str:
        """Validate format type."""
        if v not in ["text", "json"]:
            raise ValueError(f"Invalid format type: {v}")
        return v


class RetryConfig(BaseModel):
    """Backoff for backend connects and registry lookups."""

    max_attempts: int = Field(default=5, description="Connect attempts before giving up")
    base_delay: float = Field(default=0.5, description="Base delay in seconds, doubled per attempt")
    max_delay: float = Field(default=30.0, description="Upper bound for a single delay")
    jitter: float = Field(default=0.0, description="Random extra delay in seconds")
    lookup_attempts: int = Field(default=2, description="Attempts per registry lookup")

    @field_validator("max_attempts", "lookup_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """At least one attempt is always made."""
        if v < 1:
            raise ValueError("Attempt count must be at least 1")
        return v


class PackagesConfig(BaseModel):
    """Package install locations and tooling."""

    packages_dir: str = Field(default="./packages", description="Root of per-server install directories")
    npm_executable: str = Field(default="npm", description="npm executable")
    python_executable: str = Field(default="python3", description="Interpreter used to create virtualenvs")
    fail_on_warning: bool = Field(default=False, description="Treat npm WARN output as install failure")


class RegistryConfig(BaseModel):
    """Package registries queried for available versions."""

    npm_registry: str = Field(default="https://registry.npmjs.org", description="NPM registry URL")
    pypi_index: str = Field(default="https://pypi.org", description="PyPI base URL")
    timeout: float = Field(default=30.0, description="HTTP timeout in seconds")


class StoreConfig(BaseModel):
    """Persistent document store."""

    backend: str = Field(default="sqlite", description="Store backend (sqlite/memory)")
    path: str = Field(default="~/.config/mcp-gateway/gateway.db", description="SQLite database path")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate store backend."""
        if v not in ["sqlite", "memory"]:
            raise ValueError(f"Invalid store backend: {v}")
        return v


class SecretsConfig(BaseModel):
    """Secret storage."""

    key: Optional[str] = Field(default=None, description="Fernet key for stored secrets")
    key_file: str = Field(default="~/.config/mcp-gateway/secrets.key", description="Generated key location")


class GatewayConfig(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_prefix="MCP_GATEWAY_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    debug: bool = Field(default=False, description="Enable debug mode")
    log_buffer_size: int = Field(default=100, description="Captured backend messages kept per server")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    packages: PackagesConfig = Field(default_factory=PackagesConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)

    def get_packages_dir(self) -> Path:
        """Absolute packages directory."""
        return Path(os.path.expanduser(self.packages.packages_dir)).resolve()

    def get_store_path(self) -> Path:
        """Expanded SQLite database path."""
        return Path(os.path.expanduser(self.store.path))

    def apply_logging(self) -> None:
        """Configure process logging from this configuration."""
        log_cfg = self.logging
        setup_logging(
            enabled=log_cfg.enabled,
            level="DEBUG" if self.debug else log_cfg.level,
            console_level="DEBUG" if self.debug else log_cfg.console_level,
            log_file=Path(os.path.expanduser(log_cfg.file)) if log_cfg.file else None,
            format_type=log_cfg.format_type,
            enable_rich=log_cfg.enable_rich,
            max_bytes=log_cfg.max_bytes,
            backup_count=log_cfg.backup_count,
            suppress_http=log_cfg.suppress_http,
        )


DEFAULT_CONFIG_FILES = [
    "/etc/mcp-gateway/config.toml",
    "~/.config/mcp-gateway/config.toml",
    "./.mcp-gateway.toml",
]


class ConfigManager:
    """Configuration manager with hierarchical loading."""

    def __init__(self):
        self._config: Optional[GatewayConfig] = None

    def load_config(
        self,
        config_files: Optional[List[Union[str, Path]]] = None,
        **overrides: Any,
    ) -> GatewayConfig:
        """
        Load configuration from multiple sources.

        Later files override earlier ones section by section.

        Args:
            config_files: List of configuration files to load
            **overrides: Configuration overrides

        Returns:
            Loaded configuration
        """
        if config_files is None:
            config_files = DEFAULT_CONFIG_FILES

        config_data: dict = {}
        for config_file in config_files:
            file_path = Path(os.path.expanduser(str(config_file)))
            if not file_path.exists():
                continue
            try:
                file_data = toml.load(file_path)
            except (toml.TomlDecodeError, OSError) as e:
                logger.warning(f"Failed to load config from {file_path}: {e}")
                continue
            for key, value in file_data.items():
                if isinstance(value, dict) and isinstance(config_data.get(key), dict):
                    config_data[key] = {**config_data[key], **value}
                else:
                    config_data[key] = value
            logger.debug(f"Loaded configuration from {file_path}")

        config_data.update(overrides)
        self._config = GatewayConfig(**config_data)
        return self._config

    def get_config(self) -> GatewayConfig:
        """Get current configuration, loading defaults on first use."""
        if self._config is None:
            return self.load_config()
        return self._config


_config_manager = ConfigManager()

load_config = _config_manager.load_config
get_config = _config_manager.get_config
