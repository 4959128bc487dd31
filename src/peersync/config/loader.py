"""Loading and saving of sync profile files (YAML or JSON)."""

import os
import json
import yaml
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .schema import PeerSyncConfig, EXAMPLE_PROFILE
from ..utils.logging import get_logger

# Environment variable -> (config key, parser)
ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "PEERSYNC_LOG_LEVEL": ("log_level", str),
    "PEERSYNC_LOG_FORMAT": ("log_format", str),
    "PEERSYNC_SYNC_DIRECTORY": ("sync_directory", str),
    "PEERSYNC_TRANSPORT_TIMEOUT_SECONDS": ("transport_timeout_seconds", float),
}

SEARCH_PATHS = (
    "./config/peersync.yaml",
    "./config/peersync.yml",
    "./config/peersync.json",
    "./peersync.yaml",
    "./peersync.yml",
    "./peersync.json",
)

_YAML_SUFFIXES = (".yaml", ".yml")


class ConfigurationError(Exception):
    """Raised when configuration loading fails."""

    code = "configuration_error"


class ConfigLoader:
    """Reads and writes PeerSyncConfig profile files.

    ``PEERSYNC_*`` environment variables listed in ``ENV_OVERRIDES`` win over
    values from the file or dict being loaded.
    """

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self.environ = os.environ if environ is None else environ
        self.logger = get_logger(self.__class__.__name__)

    def load_from_file(self, file_path: Union[str, Path]) -> PeerSyncConfig:
        """Load and validate a profile file.

        Raises:
            ConfigurationError: If the file is missing, has an unsupported
                extension, cannot be parsed or does not validate
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise ConfigurationError(f"Configuration file not found: {file_path}")

        suffix = file_path.suffix.lower()
        if suffix not in _YAML_SUFFIXES and suffix != ".json":
            raise ConfigurationError(f"Unsupported file format: {file_path.suffix}")

        self.logger.info("Loading profiles", file_path=str(file_path))

        try:
            text = file_path.read_text(encoding="utf-8")
            data = yaml.safe_load(text) if suffix in _YAML_SUFFIXES else json.loads(text)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML format: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON format: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read {file_path}: {e}") from e

        return self.load_from_dict(data or {})

    def load_from_dict(self, data: Dict[str, Any]) -> PeerSyncConfig:
        """Validate a raw mapping, after applying environment overrides."""
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration must be a mapping, got {type(data).__name__}")

        try:
            config = PeerSyncConfig(**self._apply_env_overrides(data))
        except Exception as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        self.logger.info(
            "Profiles loaded",
            profiles_count=len(config.profiles),
            active=len(config.get_active_profiles())
        )
        return config

    def save_to_file(self, config: PeerSyncConfig, file_path: Union[str, Path], format: str = 'yaml'):
        """Write ``config`` as YAML or JSON, creating parent folders."""
        format = format.lower()
        if format not in ("yaml", "json"):
            raise ConfigurationError(f"Unsupported format: {format}")

        file_path = Path(file_path)
        data = _plain(config.model_dump())

        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, 'w', encoding='utf-8') as f:
                if format == "yaml":
                    yaml.safe_dump(data, f, default_flow_style=False, indent=2, allow_unicode=True, sort_keys=False)
                else:
                    json.dump(data, f, indent=2, default=str)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to save configuration: {e}") from e

        self.logger.info("Profiles saved", file_path=str(file_path), format=format)

    def create_default_config(self) -> PeerSyncConfig:
        """Configuration holding only the example profile."""
        return PeerSyncConfig(profiles=[EXAMPLE_PROFILE])

    def _apply_env_overrides(self, data: Dict[str, Any]) -> Dict[str, Any]:
        overrides: Dict[str, Any] = {}
        for variable, (key, parse) in ENV_OVERRIDES.items():
            raw = self.environ.get(variable)
            if not raw:
                continue
            try:
                overrides[key] = parse(raw)
            except ValueError:
                self.logger.warning("Ignoring invalid environment override", variable=variable, value=raw)

        if not overrides:
            return data

        self.logger.info("Applied environment overrides", keys=sorted(overrides))
        return {**data, **overrides}

    def validate_config(self, config: PeerSyncConfig) -> List[str]:
        """Check profiles against the local filesystem; returns warnings, never raises."""
        warnings = []

        names = [p.name for p in config.profiles]
        if len(names) != len(set(names)):
            warnings.append("Duplicate profile names found")

        for profile in config.profiles:
            source = Path(profile.source_path).expanduser()
            if not source.is_dir():
                warnings.append(f"Profile '{profile.name}' source folder does not exist: {profile.source_path}")
            if profile.target_path and Path(profile.target_path).expanduser().resolve() == source.resolve():
                warnings.append(f"Profile '{profile.name}' syncs a folder into itself")

        if warnings:
            self.logger.warning("Profile validation warnings", warnings=warnings)
        return warnings


def _plain(value: Any) -> Any:
    """Enums to their values and datetimes to ISO strings, recursively."""
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def load_config_from_env() -> PeerSyncConfig:
    """Load profiles from PEERSYNC_CONFIG_FILE, then the search paths, else defaults."""
    loader = ConfigLoader()
    logger = get_logger("load_config_from_env")

    config_file = os.getenv('PEERSYNC_CONFIG_FILE')
    if config_file:
        if os.path.exists(config_file):
            return loader.load_from_file(config_file)
        logger.warning("Specified config file not found", file=config_file)

    for file_path in SEARCH_PATHS:
        if os.path.exists(file_path):
            logger.info("Found configuration file", file=file_path)
            return loader.load_from_file(file_path)

    logger.info("No configuration file found, using the example profile")
    return loader.create_default_config()
