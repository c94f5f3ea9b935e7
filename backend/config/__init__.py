"""
Configuration module for the Trading212 dashboard backend.

Provides settings management using pydantic-settings.
Supports loading from environment variables and .env files.
"""

from .settings import Settings, get_settings, reset_settings
from .paths import (
    APP_IDENTIFIER,
    resolve_app_data_dir,
    default_database_url,
    default_log_directory,
)

__all__ = [
    "Settings",
    "get_settings",
    "reset_settings",
    "APP_IDENTIFIER",
    "resolve_app_data_dir",
    "default_database_url",
    "default_log_directory",
]
