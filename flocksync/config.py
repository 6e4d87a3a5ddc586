"""Configuration loading for the flocksync ChMS integration service.

This module provides centralized configuration management:
- Load settings from environment variables and .env files
- Validate configuration using pydantic
- Provide typed access to all settings

Per-connection settings (credentials, group filters, field prefixes) are
stored on each connection row, not here.
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment.

    Uses pydantic-settings for environment variable handling with
    .env file support via python-dotenv.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Store configuration
    store_sqlite_path: str = Field(
        default="./data/flocksync.db",
        description="SQLite database file path",
    )

    # Run mode
    run_mode: Literal["once", "daemon", "webhook"] = Field(
        default="daemon",
        description="Run mode",
    )
    sync_organization_id: str = Field(
        default="",
        description="Organization to sync in 'once' mode (empty = all active connections)",
    )

    # Sync configuration
    sync_interval_minutes: int = Field(
        default=360,
        description="Minutes between scheduled pulls",
    )
    incremental_sync: bool = Field(
        default=True,
        description="Pass the stored cursor as modified_since on scheduled and webhook pulls",
    )
    write_back_enabled: bool = Field(
        default=True,
        description="Write engagement data back to the ChMS after each pull",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        description="Per-request timeout for ChMS API calls",
    )

    # Webhook configuration
    webhook_host: str = Field(
        default="0.0.0.0",
        description="Host to listen on for webhook server",
    )
    webhook_port: int = Field(
        default=8080,
        description="Port to listen on for webhook server",
    )
    webhook_api_key: str = Field(
        default="",
        description="API key for webhook authentication (required for production)",
    )
    webhook_require_auth: bool = Field(
        default=False,
        description="Require API key authentication for webhook endpoints",
    )

    # Logging configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Log level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log format",
    )

    # Development
    debug: bool = Field(
        default=False,
        description="Enable debug mode with verbose logging",
    )

    @field_validator("sync_interval_minutes")
    @classmethod
    def validate_sync_interval(cls, v: int) -> int:
        """Ensure sync interval is positive."""
        if v <= 0:
            raise ValueError("sync_interval_minutes must be positive")
        return v

    @field_validator("http_timeout_seconds")
    @classmethod
    def validate_http_timeout(cls, v: float) -> float:
        """Ensure HTTP timeout is positive."""
        if v <= 0:
            raise ValueError("http_timeout_seconds must be positive")
        return v

    @field_validator("webhook_port")
    @classmethod
    def validate_webhook_port(cls, v: int) -> int:
        """Ensure webhook port is in valid range."""
        if v <= 0 or v > 65535:
            raise ValueError("webhook_port must be between 1 and 65535")
        return v

    @property
    def sync_interval_seconds(self) -> int:
        return self.sync_interval_minutes * 60


def load_settings(env_file: str | None = None) -> Settings:
    """Load application settings from environment.

    Args:
        env_file: Optional path to .env file. If not provided,
                 uses the default .env in the current directory.

    Returns:
        Validated Settings instance.

    Raises:
        ValidationError: If settings validation fails.
    """
    if env_file:
        return Settings(_env_file=env_file)  # type: ignore[call-arg]
    return Settings()


__all__ = ["Settings", "load_settings"]
