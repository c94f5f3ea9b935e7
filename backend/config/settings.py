"""
Application Settings and Configuration.

Loads configuration from environment variables and config files.
Covers Trading212 upstream endpoints, aggregation-layer tuning and
background job scheduling.
"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from .paths import default_database_url, default_log_directory


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment variables:
        DATABASE_URL: Database connection URL (default: sqlite)
        TRADING212_DEMO_API_URL: Practice (demo) API base URL
        TRADING212_LIVE_API_URL: Live API base URL
        TRADING212_TEST_API_KEY: Key used by the upstream health probe
        T212_*: Aggregation layer and scheduler tuning
    """

    # Database Configuration
    database_url: str = Field(
        default=default_database_url(),
        alias="DATABASE_URL"
    )

    # Application Configuration
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_directory: str = Field(default=default_log_directory(), alias="T212_LOG_DIRECTORY")
    log_retention_days: int = Field(default=30, alias="T212_LOG_RETENTION_DAYS")

    # API authentication (optional for local dev/test)
    api_auth_enabled: bool = Field(default=False, alias="T212_API_KEY_AUTH_ENABLED")
    api_auth_key: Optional[str] = Field(default=None, alias="T212_API_KEY")

    # Trading212 upstream
    trading212_demo_api_url: str = Field(
        default="https://demo.trading212.com/api/v0",
        alias="TRADING212_DEMO_API_URL",
    )
    trading212_live_api_url: str = Field(
        default="https://live.trading212.com/api/v0",
        alias="TRADING212_LIVE_API_URL",
    )
    trading212_test_api_key: str = Field(default="test-key", alias="TRADING212_TEST_API_KEY")
    trading212_timeout_seconds: float = Field(default=15.0, alias="TRADING212_TIMEOUT_SECONDS")

    # Upstream rate limiting (sliding window per key)
    rate_limit_window_seconds: float = Field(default=60.0, alias="T212_RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = Field(default=15, alias="T212_RATE_LIMIT_MAX_REQUESTS")

    # Response cache
    cache_max_entries: int = Field(default=1000, alias="T212_CACHE_MAX_ENTRIES")
    cache_stale_seconds: float = Field(default=600.0, alias="T212_CACHE_STALE_SECONDS")

    # Request batching
    batch_delay_ms: int = Field(default=50, alias="T212_BATCH_DELAY_MS")
    batch_max_size: int = Field(default=20, alias="T212_BATCH_MAX_SIZE")
    batch_call_timeout_seconds: float = Field(default=20.0, alias="T212_BATCH_CALL_TIMEOUT_SECONDS")

    # Circuit breaker
    circuit_breaker_failure_threshold: int = Field(default=1, alias="T212_CIRCUIT_BREAKER_FAILURE_THRESHOLD")
    circuit_breaker_open_seconds: float = Field(default=15.0, alias="T212_CIRCUIT_BREAKER_OPEN_SECONDS")

    # Background cache sync
    background_sync_enabled: bool = Field(default=True, alias="T212_BACKGROUND_SYNC_ENABLED")
    background_sync_interval_seconds: int = Field(default=300, alias="T212_BACKGROUND_SYNC_INTERVAL_SECONDS")
    background_sync_max_users: int = Field(default=10, alias="T212_BACKGROUND_SYNC_MAX_USERS")
    background_sync_max_accounts_per_user: int = Field(default=5, alias="T212_BACKGROUND_SYNC_MAX_ACCOUNTS")
    background_sync_user_delay_seconds: float = Field(default=1.0, alias="T212_BACKGROUND_SYNC_USER_DELAY_SECONDS")

    # Trail stop monitor
    trail_stop_monitor_enabled: bool = Field(default=True, alias="T212_TRAIL_STOP_MONITOR_ENABLED")
    trail_stop_monitor_interval_seconds: int = Field(default=60, alias="T212_TRAIL_STOP_MONITOR_INTERVAL_SECONDS")

    @field_validator("api_auth_key", "trading212_test_api_key")
    @classmethod
    def strip_keys(cls, v):
        """Strip whitespace from keys to prevent authentication failures."""
        return v.strip() if v else v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings singleton.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
