"""
Configuration settings for the Minex field client.

This module handles client configuration using Pydantic settings.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Client settings."""

    # Application
    app_name: str = "Minex Field Client"
    log_level: str = "INFO"

    # Remote API
    api_base_url: str = "http://localhost:3000"
    http_timeout_seconds: float = 20.0
    health_check_timeout_seconds: float = 5.0
    auth_refresh_path: str = "/auth/refresh"

    # Retry policy (transient failures and read-after-write 404s)
    retry_max_retries: int = 3
    retry_base_delay_ms: int = 250
    not_found_max_attempts: int = 3

    # Trip list is scoped to "today" at the site (WIB, UTC+7)
    site_utc_offset_hours: int = 7

    # Local device storage
    local_db_url: str = "sqlite+aiosqlite:///./minex_local.db"
    db_echo: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
