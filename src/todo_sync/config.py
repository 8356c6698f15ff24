"""Configuration management for todo-sync."""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import List, Optional

import yaml


logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "TODO_SYNC_CONFIG"


@dataclass
class SyncConfig:
    """Settings of the sync between Todoist and a vault."""

    # Vault layout
    vault_path: str = "~/Vault"
    system_folder: str = "System"
    excluded_folders: List[str] = field(default_factory=lambda: ["System", "Local"])
    inbox_document: str = "Inbox.md"
    projects_folder: str = "Projects"

    # Sync state, relative to the system folder
    mapping_file: str = "task-mappings.json"
    backup_folder: str = "Backups"
    backup_retention: int = 7

    # Remote service
    fetch_timeout: float = 10.0
    request_timeout: float = 30.0

    # Change detection
    incremental_min_tasks: int = 10
    incremental_change_threshold: float = 0.3
    content_change_threshold: float = 0.10

    # Behavior settings
    auto_sync_interval: int = 5  # Minutes
    enable_reverse_sync: bool = True

    @property
    def vault_dir(self) -> Path:
        return Path(os.path.expanduser(self.vault_path))

    @property
    def system_dir(self) -> Path:
        return self.vault_dir / self.system_folder

    @property
    def mapping_path(self) -> Path:
        return self.system_dir / self.mapping_file

    @property
    def backup_dir(self) -> Path:
        return self.system_dir / self.backup_folder

    def to_yaml(self) -> str:
        """Serialize config to YAML."""
        return yaml.dump(asdict(self), default_flow_style=False, sort_keys=False)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> "SyncConfig":
        """Deserialize config from YAML; unknown keys are ignored."""
        data = yaml.safe_load(yaml_str) or {}
        if not isinstance(data, dict):
            raise ValueError("configuration must be a mapping")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {', '.join(unknown)}")
        return cls(**{key: value for key, value in data.items() if key in known})


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    return Path(os.path.expanduser("~/.config/todo-sync"))


def get_config_path() -> Path:
    """Configuration file, overridable through ``TODO_SYNC_CONFIG``."""
    override = os.getenv(CONFIG_ENV_VAR)
    if override:
        return Path(os.path.expanduser(override))
    return get_config_dir() / "config.yaml"


def load_config(config_path: Optional[Path] = None) -> SyncConfig:
    """Load configuration from file, or defaults if there is none.

    An unreadable file is reported and the defaults are used.
    """
    config_path = Path(config_path) if config_path else get_config_path()
    if not config_path.exists():
        logger.debug(f"No configuration at {config_path}, using defaults")
        return SyncConfig()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = SyncConfig.from_yaml(f.read())
    except (OSError, yaml.YAMLError, TypeError, ValueError) as e:
        logger.warning(f"Failed to load config from {config_path}: {e}; using defaults")
        return SyncConfig()

    logger.debug(f"Loaded configuration from {config_path}")
    return config


def save_config(config: SyncConfig, config_path: Optional[Path] = None) -> Path:
    """Save configuration to file.

    Returns:
        Path written
    """
    config_path = Path(config_path) if config_path else get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        f.write(config.to_yaml())
    logger.info(f"Configuration saved to {config_path}")
    return config_path
