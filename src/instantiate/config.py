"""
Configuration management for Instantiate

Settings are read from INSTANTIATE_* environment variables, an optional .env
file and command-line overrides using Pydantic settings.
"""

import logging
import re
from pathlib import Path
from typing import List, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class InstantiateConfig(BaseSettings):
    """
    Main configuration class for Instantiate.

    Configuration is loaded from:
    1. Environment variables (highest priority)
    2. .env file
    3. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="INSTANTIATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: Optional[str] = Field(
        default=None,
        description="PostgreSQL connection URL for the merge request ledger",
    )
    database_pool_size: int = Field(
        default=5,
        description="Maximum connections kept in the database pool",
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_dir: str = Field(
        default="logs",
        description="Directory for log files",
    )
    verbose: bool = Field(
        default=False,
        description="Enable verbose console output",
    )

    # Working directories
    working_path: str = Field(
        default="/tmp",
        description="Root under which per merge request checkouts are created",
    )

    # Port allocation
    port_min: int = Field(default=10000, description="Lowest allocatable host port")
    port_max: int = Field(default=11000, description="Highest allocatable host port")
    excluded_ports: List[int] = Field(
        default_factory=list,
        description="Ports inside the range that must never be handed out",
    )

    # Public address of deployed stacks
    host_domain: str = Field(default="localhost", description="Domain stacks are served on")
    host_scheme: str = Field(default="http", description="Scheme stacks are served with")

    # Runtime environment
    app_env: str = Field(
        default="production",
        description="Application environment (development rewrites localhost clone URLs)",
    )
    dev_host_alias: str = Field(
        default="host.docker.internal",
        description="Hostname substituted for localhost in development mode",
    )
    ignore_ssl_errors: bool = Field(
        default=False,
        description="Disable TLS verification for git and provider API calls",
    )
    container_runtime: str = Field(
        default="docker",
        description="Container runtime used for prebuild steps and port discovery",
    )

    # Source control providers
    github_username: Optional[str] = Field(default=None, description="GitHub clone user")
    github_token: Optional[str] = Field(default=None, description="GitHub API and clone token")
    github_api_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST API base URL",
    )
    gitlab_username: Optional[str] = Field(default=None, description="GitLab clone user")
    gitlab_token: Optional[str] = Field(default=None, description="GitLab API and clone token")

    # Behaviour
    redeploy_command: str = Field(
        default="instantiate deploy",
        description="Comment text that forces a redeploy",
    )
    health_interval: float = Field(
        default=30.0,
        description="Seconds between two health reconciliation passes",
    )

    @validator("log_level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @validator("container_runtime")
    def validate_container_runtime(cls, v: str) -> str:
        """Validate container runtime is supported."""
        valid_runtimes = ["podman", "docker"]
        if v.lower() not in valid_runtimes:
            raise ValueError(
                f"container_runtime must be one of: {', '.join(valid_runtimes)}"
            )
        return v.lower()

    @validator("host_scheme")
    def validate_host_scheme(cls, v: str) -> str:
        if v.lower() not in ("http", "https"):
            raise ValueError("host_scheme must be 'http' or 'https'")
        return v.lower()

    @validator("database_url")
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate database URL format if provided."""
        if v is None:
            return v

        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with 'postgresql://' or 'postgres://'"
            )

        return v

    @validator("port_max")
    def validate_port_range(cls, v: int, values) -> int:
        """Ensure the allocation range is a valid, non-empty port interval."""
        port_min = values.get("port_min", 1)
        if not 1 <= port_min <= 65535 or not 1 <= v <= 65535:
            raise ValueError("port_min and port_max must be between 1 and 65535")
        if v < port_min:
            raise ValueError(f"port_max ({v}) must not be lower than port_min ({port_min})")
        return v

    @property
    def host_dns(self) -> str:
        """Base URL stacks are published under."""
        return f"{self.host_scheme}://{self.host_domain}"

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() == "development"

    def get_log_dir_path(self) -> Path:
        """Get log directory as Path object."""
        return Path(self.log_dir)

    def create_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        self.get_log_dir_path().mkdir(parents=True, exist_ok=True)

    def mask_sensitive_values(self) -> dict:
        """Get configuration dict with sensitive values masked."""
        config_dict = self.model_dump()

        if config_dict.get("database_url"):
            config_dict["database_url"] = re.sub(
                r"(postgres(?:ql)?://[^:]+:)[^@]+(@.*)",
                r"\1***\2",
                config_dict["database_url"],
            )
        for key in ("github_token", "gitlab_token"):
            if config_dict.get(key):
                config_dict[key] = "***"

        return config_dict


def load_config(cli_overrides: Optional[dict] = None) -> InstantiateConfig:
    """
    Load configuration with optional CLI overrides.

    Args:
        cli_overrides: CLI argument overrides, None values are ignored

    Returns:
        Loaded configuration
    """
    config = InstantiateConfig()

    if cli_overrides:
        overrides = {k: v for k, v in cli_overrides.items() if v is not None}
        if overrides:
            config_data = config.model_dump()
            config_data.update(overrides)
            config = InstantiateConfig(**config_data)

    return config


def get_default_config() -> InstantiateConfig:
    """
    Get default configuration for development/testing.

    Returns:
        Default configuration instance
    """
    return InstantiateConfig(
        log_level="DEBUG",
        verbose=True,
        app_env="development",
    )
