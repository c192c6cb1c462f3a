"""Application configuration settings."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CaspioSettings(BaseSettings):
    """Caspio REST API configuration."""

    base_url: str = Field(default="")
    client_id: str = Field(default="")
    client_secret: str = Field(default="")
    token_path: str = Field(default="/oauth/token")
    members_table: str = Field(default="CalAIM_tbl_Members")
    request_timeout_seconds: int = Field(default=60)

    model_config = SettingsConfigDict(env_prefix="CASPIO_")


class DatabaseSettings(BaseSettings):
    """Local document store configuration."""

    url: str = Field(default="sqlite:///./data/members_cache.db")

    model_config = SettingsConfigDict(env_prefix="DB_")


class SyncSettings(BaseSettings):
    """Members cache sync tuning."""

    page_size: int = Field(default=1000)
    max_pages: int = Field(default=50)  # safety cap
    chunk_size: int = Field(default=400)  # stays under the atomic batch limit
    event_batch_size: int = Field(default=400)
    fields_config_path: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(env_prefix="SYNC_")


class SchedulingSettings(BaseSettings):
    """Scheduling configuration."""

    enabled: bool = Field(default=True)
    sync_interval_minutes: int = Field(default=15)
    full_sync_cron: Optional[str] = Field(default="0 3 * * *")  # nightly backfill

    model_config = SettingsConfigDict(env_prefix="SCHEDULE_")


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO")
    format: str = Field(default="json")
    file_path: Optional[str] = Field(default="./logs/members_sync.log")

    model_config = SettingsConfigDict(env_prefix="LOG_")


class AppSettings(BaseSettings):
    """Main application settings."""

    name: str = Field(default="Members Cache Sync")
    version: str = Field(default="1.0.0")
    environment: str = Field(default="development")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)

    # Sub-settings
    caspio: CaspioSettings = Field(default_factory=CaspioSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
    )


# Global settings instance
settings = AppSettings()


def get_settings() -> AppSettings:
    """Get application settings."""
    return settings
