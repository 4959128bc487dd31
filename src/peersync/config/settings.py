"""Application configuration settings."""

from typing import Optional, List
from pydantic import Field
from pydantic_settings import BaseSettings


DEFAULT_EXCLUDE_PATTERNS = [
    ".git", ".svn", ".hg",
    "__pycache__", "*.pyc",
    ".DS_Store", "Thumbs.db", "desktop.ini",
    "*.swp", "*~",
]


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO")
    format: str = Field(default="console")
    file_path: Optional[str] = Field(default=None)

    class Config:
        env_prefix = "PEERSYNC_LOG_"


class SyncSettings(BaseSettings):
    """Sync session defaults."""

    sync_directory: str = Field(default="./synced_files", description="Where received files land")
    compute_hashes: bool = Field(default=False, description="Hash every file while building a catalog")
    hash_algorithm: str = Field(default="md5")
    conflict_strategy: str = Field(default="keep_newest")
    auto_accept: bool = Field(default=True, description="Accept incoming sync requests without asking")
    mirror_deletions: bool = Field(default=False, description="Delete target files missing from the source")
    transport_timeout_seconds: float = Field(default=30.0)
    exclude_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))

    class Config:
        env_prefix = "PEERSYNC_SYNC_"


class AppSettings(BaseSettings):
    """Main application settings."""

    name: str = Field(default="peersync")
    version: str = Field(default="0.1.0")
    environment: str = Field(default="development")

    # Sub-settings
    logging: LoggingSettings = LoggingSettings()
    sync: SyncSettings = SyncSettings()

    class Config:
        env_prefix = "PEERSYNC_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = AppSettings()


def get_settings() -> AppSettings:
    """Get application settings."""
    return settings
