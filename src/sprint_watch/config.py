"""
Configuration management for Sprint Watch.

This module handles environment variables, settings validation, and configuration
management using Pydantic Settings for type safety and validation.
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RALLY_BASE_URL = "https://rally1.rallydev.com"


class RallyConfig(BaseModel):
    """Rally connection settings shared by every tracker."""

    base_url: str = Field(default=DEFAULT_RALLY_BASE_URL, description="Rally URL")
    api_key: str = Field(default="", description="Rally API key (ZSESSIONID)")
    timeout_seconds: float = Field(default=30.0, description="Request timeout")
    live_page_size: int = Field(default=200, description="WSAPI page size")
    max_pages: int = Field(default=25, description="Hard cap on pages per query")
    snapshot_page_size: int = Field(
        default=500, description="Lookback page size (one page per poll)"
    )
    metadata_page_size: int = Field(
        default=500, description="Page size for batch metadata lookups"
    )


class RetryConfig(BaseModel):
    """Retry and backoff settings for remote requests."""

    max_retries: int = Field(default=3, description="Retries after the first attempt")
    base_delay_seconds: float = Field(default=0.5, description="First backoff delay")
    max_delay_seconds: float = Field(default=4.0, description="Backoff delay cap")


class PollingConfig(BaseModel):
    """Polling and retention settings."""

    tick_seconds: int = Field(
        default=60, description="Coarse scheduling tick in seconds"
    )
    snapshot_overlap_minutes: int = Field(
        default=15, description="Overlap window re-queried on every poll"
    )
    history_retention_days: int = Field(
        default=45, description="Change history retention window in days"
    )
    seen_change_ids_limit: int = Field(
        default=2000, description="Maximum remembered change ids per tracker"
    )


class ServerConfig(BaseModel):
    """Status server configuration settings."""

    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8765, description="Server port")
    debug: bool = Field(default=False, description="Enable debug mode")


class NotificationConfig(BaseModel):
    """Notification delivery settings."""

    teams_webhook_url: str = Field(default="", description="Teams incoming webhook")
    summary_threshold: int = Field(
        default=5, description="Collapse into one summary above this many messages"
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Rally configuration
    rally_base_url: str = Field(
        default=DEFAULT_RALLY_BASE_URL, description="Rally base URL"
    )
    rally_api_key: str = Field(default="", description="Rally API key")

    # State configuration
    state_backend: str = Field(
        default="file", description="State backend: memory or file"
    )
    state_file: str = Field(
        default="./sprint_watch_state.json", description="Persisted state document"
    )
    trackers_file: str = Field(
        default="./sprint_watch_trackers.json", description="Tracker configurations"
    )

    # Server configuration
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8765, description="Server port")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Logging configuration
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format")

    # Polling configuration
    tick_seconds: int = Field(default=60, description="Scheduling tick in seconds")
    snapshot_overlap_minutes: int = Field(
        default=15, description="Snapshot query overlap window in minutes"
    )
    history_retention_days: int = Field(
        default=45, description="History retention in days"
    )
    seen_change_ids_limit: int = Field(
        default=2000, description="Seen change id cap per tracker"
    )

    # Request configuration
    request_max_retries: int = Field(default=3, description="Request retries")
    request_base_delay_seconds: float = Field(
        default=0.5, description="Base backoff delay in seconds"
    )
    request_max_delay_seconds: float = Field(
        default=4.0, description="Maximum backoff delay in seconds"
    )
    request_timeout_seconds: float = Field(
        default=30.0, description="Request timeout in seconds"
    )
    live_page_size: int = Field(default=200, description="WSAPI page size")
    max_pages: int = Field(default=25, description="Page cap per list query")
    snapshot_page_size: int = Field(default=500, description="Lookback page size")
    metadata_page_size: int = Field(default=500, description="Metadata page size")

    # Notification configuration
    teams_webhook_url: str = Field(default="", description="Teams webhook URL")
    notification_summary_threshold: int = Field(
        default=5, description="Summary notification threshold"
    )

    @field_validator("rally_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the base URL so paths can be appended directly."""
        return v.strip().rstrip("/") or DEFAULT_RALLY_BASE_URL

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("state_backend")
    @classmethod
    def validate_state_backend(cls, v: str) -> str:
        """Validate state backend."""
        allowed_backends = {"memory", "file"}
        if v.lower() not in allowed_backends:
            raise ValueError(f"Invalid state backend: {v}")
        return v.lower()

    @field_validator("request_max_retries", "live_page_size", "max_pages")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Reject negative counts."""
        if v < 0:
            raise ValueError("Value must not be negative")
        return v

    @property
    def has_credentials(self) -> bool:
        """Check if an API key is configured."""
        return bool(self.rally_api_key.strip())

    @property
    def rally_config(self) -> RallyConfig:
        """Get Rally connection configuration."""
        return RallyConfig(
            base_url=self.rally_base_url,
            api_key=self.rally_api_key,
            timeout_seconds=self.request_timeout_seconds,
            live_page_size=self.live_page_size,
            max_pages=self.max_pages,
            snapshot_page_size=self.snapshot_page_size,
            metadata_page_size=self.metadata_page_size,
        )

    @property
    def retry_config(self) -> RetryConfig:
        """Get request retry configuration."""
        return RetryConfig(
            max_retries=self.request_max_retries,
            base_delay_seconds=self.request_base_delay_seconds,
            max_delay_seconds=self.request_max_delay_seconds,
        )

    @property
    def polling_config(self) -> PollingConfig:
        """Get polling configuration."""
        return PollingConfig(
            tick_seconds=self.tick_seconds,
            snapshot_overlap_minutes=self.snapshot_overlap_minutes,
            history_retention_days=self.history_retention_days,
            seen_change_ids_limit=self.seen_change_ids_limit,
        )

    @property
    def server_config(self) -> ServerConfig:
        """Get server configuration."""
        return ServerConfig(host=self.host, port=self.port, debug=self.debug)

    @property
    def notification_config(self) -> NotificationConfig:
        """Get notification configuration."""
        return NotificationConfig(
            teams_webhook_url=self.teams_webhook_url.strip(),
            summary_threshold=self.notification_summary_threshold,
        )


# Global settings instance - initialized lazily to avoid import-time errors
_settings_instance = None


def get_settings() -> Settings:
    """Get the global settings instance, creating it if necessary."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def __getattr__(name: str) -> Any:
    """Allow module-level access to settings attributes."""
    if name == "settings":
        return get_settings()
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
