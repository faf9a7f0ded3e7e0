"""Configuration management for bootrescue.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Programmatic overrides (passed to RescueConfig constructor)
2. Environment variables (BOOTRESCUE_* prefix)
3. TOML configuration file
4. Default values defined in this module

Example TOML configuration:
    [scheduler]
    max_concurrent_jobs = 20
    job_timeout_minutes = 70

    [repair]
    repair_script_id = "win-crowdstrike-fix-bootloop"

Example environment variable override:
    BOOTRESCUE_SCHEDULER__MAX_CONCURRENT_JOBS=5
    BOOTRESCUE_AZURE__CLIENT_SECRET="..."
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_REPAIR_SCRIPT_ID = "win-crowdstrike-fix-bootloop"


class SchedulerConfig(BaseSettings):
    """Worker pool configuration.

    Attributes:
        max_concurrent_jobs: Maximum number of repairs running at once per subscription
        job_timeout_minutes: Wall-clock budget for a single target before it is cancelled
        poll_interval_seconds: Seconds between drain loop ticks
        progress_interval_seconds: Seconds between progress log lines while draining
        cancel_grace_seconds: Seconds to wait for cancelled workers at the end of a drain
    """

    model_config = SettingsConfigDict(
        env_prefix="BOOTRESCUE_SCHEDULER__",
        extra="forbid",
    )

    max_concurrent_jobs: int = Field(default=20, ge=1, le=500)
    job_timeout_minutes: float = Field(default=70.0, gt=0, le=24 * 60)
    poll_interval_seconds: float = Field(default=1.0, gt=0, le=60)
    progress_interval_seconds: float = Field(default=60.0, gt=0)
    cancel_grace_seconds: float = Field(default=5.0, ge=0, le=300)

    @property
    def job_timeout_seconds(self) -> float:
        """Job timeout expressed in seconds."""
        return self.job_timeout_minutes * 60.0


class RepairConfig(BaseSettings):
    """Per-target repair procedure configuration.

    Attributes:
        repair_script_id: Identifier of the remote repair procedure to run
        repair_admin_username: Administrative user created on each repair VM
        swap_grace_seconds: Seconds to wait after restarting a VM on its original disk
    """

    model_config = SettingsConfigDict(
        env_prefix="BOOTRESCUE_REPAIR__",
        extra="forbid",
    )

    repair_script_id: str = Field(default=DEFAULT_REPAIR_SCRIPT_ID, min_length=1)
    repair_admin_username: str = Field(default="repairadmin", min_length=1, max_length=20)
    swap_grace_seconds: float = Field(default=60.0, ge=0, le=3600)


class AzureConfig(BaseSettings):
    """Azure control plane configuration.

    Attributes:
        client_id: Service principal application id
        client_secret: Service principal secret
        tenant_id: Directory (tenant) id
        az_path: Path or name of the Azure CLI executable
        command_timeout_seconds: Optional timeout for a single CLI call
    """

    model_config = SettingsConfigDict(
        env_prefix="BOOTRESCUE_AZURE__",
        extra="forbid",
    )

    client_id: str = Field(default="")
    client_secret: SecretStr = Field(default=SecretStr(""))
    tenant_id: str = Field(default="")
    az_path: str = Field(default="az")
    command_timeout_seconds: float | None = Field(default=None, gt=0)


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None for stdout only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="BOOTRESCUE_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="console")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=50, ge=1, le=1000)
    retention_count: int = Field(default=10, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class RescueConfig(BaseSettings):
    """Root configuration for bootrescue.

    Environment variable format for nested config:
        BOOTRESCUE_<SECTION>__<KEY>=value

    Example:
        BOOTRESCUE_SCHEDULER__JOB_TIMEOUT_MINUTES=45
        BOOTRESCUE_AZURE__TENANT_ID="00000000-0000-0000-0000-000000000000"
    """

    model_config = SettingsConfigDict(
        env_prefix="BOOTRESCUE_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    repair: RepairConfig = Field(default_factory=RepairConfig)
    azure: AzureConfig = Field(default_factory=AzureConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: Path | None = None) -> RescueConfig:
    """Load configuration from TOML file with environment variable overrides.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./bootrescue.toml (current directory)
    3. ~/.config/bootrescue/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        RescueConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path: Path | None = config_path
    else:
        search_paths = [
            Path.cwd() / "bootrescue.toml",
            Path.home() / ".config" / "bootrescue" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    try:
        return RescueConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(
                f"Invalid configuration in {selected_path}: {e}"
            ) from e
        else:
            raise ValueError(f"Invalid configuration: {e}") from e
