"""Configuration package for peersync."""

from .settings import (
    LoggingSettings,
    SyncSettings,
    AppSettings,
    DEFAULT_EXCLUDE_PATTERNS,
    get_settings
)

from .schema import (
    PeerSyncConfig,
    SyncProfile,
    EXAMPLE_PROFILE
)

from .loader import (
    ConfigLoader,
    ConfigurationError,
    load_config_from_env
)

__all__ = [
    "LoggingSettings",
    "SyncSettings",
    "AppSettings",
    "DEFAULT_EXCLUDE_PATTERNS",
    "get_settings",

    "PeerSyncConfig",
    "SyncProfile",
    "EXAMPLE_PROFILE",

    "ConfigLoader",
    "ConfigurationError",
    "load_config_from_env"
]
