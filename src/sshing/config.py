"""
Application configuration for sshing.

This module provides the YAML configuration file, typed sections with
defaults, and the getters used by the runtime and the event loop. It does
not hold host data; hosts live in the SSH config and the metadata file
managed by store.py.

Features:
- YAML configuration file at ~/.config/sshing/config.yaml
- Default values with user overrides (unknown keys are ignored)
- Paths of the SSH config and metadata files
- ssh options for captured remote commands
- Docker behaviour (sudo, timeouts, script discovery, log/stats defaults)
- Log location and rotation

Architecture:
- ConfigManager: Main configuration interface
- Merges user config with defaults section by section
- Handles missing/invalid config gracefully (logs and falls back)
"""

import logging
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass
class PathsConfig:
    """Location of the files that hold the host registry."""
    ssh_config: str = "~/.ssh/config"
    metadata: str = "~/.ssh/sshing.yaml"
    legacy_metadata: str = "~/.ssh/sshing.json"
    ssh_dir: str = "~/.ssh"


@dataclass
class SshConfig:
    """Options for non-interactive ssh invocations."""
    binary: str = "ssh"
    connect_timeout: int = 10  # seconds
    batch_mode: bool = True
    extra_options: List[str] = field(default_factory=list)


@dataclass
class DockerConfig:
    """Remote Docker behaviour."""
    use_sudo: bool = False
    command_timeout: float = 30.0  # seconds
    scripts_root: str = "~"
    script_patterns: List[str] = field(
        default_factory=lambda: ["start*.sh", "deploy*.sh", "run*.sh", "docker*.sh"])
    default_log_lines: int = 100
    stats_interval: int = 2  # seconds
    interactive_scripts: bool = False


@dataclass
class RsyncConfig:
    """rsync defaults."""
    binary: str = "rsync"
    compress: bool = False
    extra_args: List[str] = field(default_factory=list)


@dataclass
class UIConfig:
    """UI-related configuration."""
    refresh_interval: int = 100  # milliseconds
    page_size: int = 10


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    file_path: Optional[str] = None  # None for default
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class AppConfig:
    """Main application configuration."""
    paths: PathsConfig = field(default_factory=PathsConfig)
    ssh: SshConfig = field(default_factory=SshConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    rsync: RsyncConfig = field(default_factory=RsyncConfig)
    ui: UIConfig = field(default_factory=UIConfig)
    logging: LogConfig = field(default_factory=LogConfig)


class ConfigManager:
    """Configuration manager with YAML file support."""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir else Path.home() / ".config" / "sshing"
        self.config_file = self.config_dir / "config.yaml"
        self._config: AppConfig = AppConfig()

        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create config directory {self.config_dir}: {e}")

        self.load_config()

    def load_config(self) -> None:
        """Load configuration from YAML file."""
        try:
            if self.config_file.exists():
                with open(self.config_file, 'r') as f:
                    user_config = yaml.safe_load(f) or {}
                if not isinstance(user_config, dict):
                    raise ValueError("top level must be a mapping")
                self._config = self._merge_configs(AppConfig(), user_config)
                logger.debug(f"Loaded configuration from {self.config_file}")
            else:
                self.save_config()
                logger.info(f"Created default configuration at {self.config_file}")
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config: {e}, using defaults")
            self._config = AppConfig()

    def save_config(self) -> None:
        """Save current configuration to YAML file."""
        try:
            with open(self.config_file, 'w') as f:
                yaml.safe_dump(asdict(self._config), f, default_flow_style=False, indent=2)
            logger.debug(f"Saved configuration to {self.config_file}")
        except OSError as e:
            logger.error(f"Failed to save config: {e}")

    def get_config(self) -> AppConfig:
        """Get current configuration."""
        return self._config

    def _merge_configs(self, default: AppConfig, user: Dict[str, Any]) -> AppConfig:
        """Merge user config with defaults."""
        for section in fields(default):
            updates = user.get(section.name)
            if isinstance(updates, dict):
                self._merge_dataclass(getattr(default, section.name), updates)
        return default

    def _merge_dataclass(self, obj: Any, updates: Dict[str, Any]) -> None:
        """Merge updates into dataclass object."""
        for key, value in updates.items():
            if hasattr(obj, key) and not is_dataclass(getattr(obj, key)):
                setattr(obj, key, value)
            elif hasattr(obj, key) and isinstance(value, dict):
                self._merge_dataclass(getattr(obj, key), value)

    # Convenience getters

    def get_log_level(self) -> str:
        return self._config.logging.level

    def get_log_path(self) -> Optional[str]:
        return self._config.logging.file_path

    def get_refresh_interval(self) -> int:
        return self._config.ui.refresh_interval

    def get_ssh_config_path(self) -> Path:
        return Path(self._config.paths.ssh_config).expanduser()

    def get_metadata_path(self) -> Path:
        return Path(self._config.paths.metadata).expanduser()

    def get_legacy_metadata_path(self) -> Path:
        return Path(self._config.paths.legacy_metadata).expanduser()

    def get_ssh_dir(self) -> Path:
        return Path(self._config.paths.ssh_dir).expanduser()


config_manager = ConfigManager()
