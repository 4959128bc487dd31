"""Configuration schema definitions for sync profiles."""

from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, validator

from ..core.conflicts import Resolution
from .settings import DEFAULT_EXCLUDE_PATTERNS


class SyncProfile(BaseModel):
    """A named source/target folder pair and how it should be synced."""

    name: str = Field(..., description="Human-readable profile name")
    source_path: str = Field(..., description="Folder offered to the peer")
    target_path: Optional[str] = Field(None, description="Folder the peer writes into (defaults to the sync directory)")
    description: Optional[str] = Field(None, description="Optional description")

    two_way: bool = Field(default=False, description="Send changes in both directions")
    conflict_strategy: Resolution = Field(default=Resolution.KEEP_NEWEST, description="Default conflict resolution")
    compute_hashes: bool = Field(default=False, description="Compare files by checksum instead of size and mtime")
    mirror_deletions: bool = Field(default=False, description="Delete target files missing from the source")
    exclude_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))

    is_active: bool = Field(default=True, description="Whether this profile can be run")
    tags: Optional[List[str]] = Field(None, description="Tags for organizing profiles")

    @validator('conflict_strategy')
    def validate_conflict_strategy(cls, v):
        if v == Resolution.UNRESOLVED:
            raise ValueError("conflict_strategy must be keep_local, keep_remote or keep_newest")
        return v

    @validator('source_path')
    def validate_source_path(cls, v):
        if not v.strip():
            raise ValueError("source_path must not be empty")
        return v


class PeerSyncConfig(BaseModel):
    """Root configuration file model."""

    version: str = Field(default="1.0.0", description="Configuration version")
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    profiles: List[SyncProfile] = Field(default_factory=list, description="Configured sync profiles")

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Logging format (json, console)")

    sync_directory: Optional[str] = Field(None, description="Override for the received-files directory")
    transport_timeout_seconds: Optional[float] = Field(None, description="Override for the per-call transport timeout")

    @validator('log_level')
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('log_format')
    def validate_log_format(cls, v):
        if v.lower() not in ('json', 'console'):
            raise ValueError("Log format must be 'json' or 'console'")
        return v.lower()

    @validator('transport_timeout_seconds')
    def validate_timeout(cls, v):
        if v is not None and v <= 0:
            raise ValueError("Transport timeout must be positive")
        return v

    def get_profile(self, name: str) -> Optional[SyncProfile]:
        """Get a profile by name."""
        for profile in self.profiles:
            if profile.name == name:
                return profile
        return None

    def get_active_profiles(self) -> List[SyncProfile]:
        """Get all active profiles."""
        return [p for p in self.profiles if p.is_active]

    def get_two_way_profiles(self) -> List[SyncProfile]:
        """Get active profiles that sync in both directions."""
        return [p for p in self.profiles if p.is_active and p.two_way]


EXAMPLE_PROFILE = SyncProfile(
    name="documents",
    source_path="~/Documents/shared",
    description="Push shared documents to the paired device",
    two_way=False,
    conflict_strategy=Resolution.KEEP_NEWEST,
    tags=["documents"]
)
