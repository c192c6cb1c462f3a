"""Configuration package for the members cache sync.

The file loader lives in ``members_sync.config.loader``; it is not imported
here because it depends on the logging utilities, which read these settings.
"""

from .settings import (
    CaspioSettings,
    DatabaseSettings,
    SyncSettings,
    SchedulingSettings,
    LoggingSettings,
    AppSettings,
    get_settings
)

from .schema import (
    SyncFieldsConfig,
    DEFAULT_MEMBER_FIELDS,
    DEFAULT_CRITICAL_FIELDS,
    DEFAULT_SCHEMA_PATHS
)

__all__ = [
    "CaspioSettings",
    "DatabaseSettings",
    "SyncSettings",
    "SchedulingSettings",
    "LoggingSettings",
    "AppSettings",
    "get_settings",

    "SyncFieldsConfig",
    "DEFAULT_MEMBER_FIELDS",
    "DEFAULT_CRITICAL_FIELDS",
    "DEFAULT_SCHEMA_PATHS",
]
