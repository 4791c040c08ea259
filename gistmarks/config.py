"""
Configuration management for Gistmarks.

Supports a user config (~/.config/gistmarks/config.toml), a local
config (./gistmarks.toml) and GISTMARKS_* environment variables.
"""
import os
import tomli
import tomli_w
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, field, asdict

from gistmarks.constants import (
    DEFAULT_DESCRIPTION, DEFAULT_FILENAME, DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_REQUEST_TIMEOUT, DEFAULT_STATE_FILE, GITHUB_API_URL,
)


def user_config_path() -> Path:
    return Path.home() / ".config" / "gistmarks" / "config.toml"


@dataclass
class GistmarksConfig:
    """
    Gistmarks configuration with sensible defaults.

    Configuration hierarchy (highest to lowest priority):
    1. Command-line arguments
    2. Environment variables (GISTMARKS_*)
    3. Local config file (./gistmarks.toml)
    4. User config file (~/.config/gistmarks/config.toml)
    5. Defaults
    """

    # Remote document
    github_token: Optional[str] = field(default=None)
    gist_id: Optional[str] = field(default=None)
    filename: str = field(default=DEFAULT_FILENAME)
    description: str = field(default=DEFAULT_DESCRIPTION)
    api_base_url: str = field(default=GITHUB_API_URL)

    # Sync behaviour
    poll_interval_ms: int = field(default=DEFAULT_POLL_INTERVAL_MS)
    timeout: int = field(default=DEFAULT_REQUEST_TIMEOUT)  # Request timeout in seconds

    # Local state
    state_file: str = field(default=DEFAULT_STATE_FILE)

    # Display settings
    output_format: str = field(default="table")  # table, json
    color_output: bool = field(default=True)
    log_level: str = field(default="INFO")

    @classmethod
    def load(cls, config_file: Optional[Path] = None) -> "GistmarksConfig":
        """
        Load configuration from files and environment.

        Args:
            config_file: Specific config file to load (applied after the others)

        Returns:
            Merged configuration object
        """
        config = cls()

        path = user_config_path()
        if path.exists():
            config._merge(cls._load_toml(path))

        local_path = Path.cwd() / "gistmarks.toml"
        if local_path.exists():
            config._merge(cls._load_toml(local_path))

        if config_file and config_file.exists():
            config._merge(cls._load_toml(config_file))

        config._apply_env_vars()
        config._expand_paths()

        return config

    @staticmethod
    def _load_toml(path: Path) -> Dict[str, Any]:
        """Load TOML configuration file."""
        with open(path, "rb") as f:
            return tomli.load(f)

    def _merge(self, data: Dict[str, Any]):
        """Merge configuration data into this instance."""
        for key, value in data.items():
            if hasattr(self, key):
                setattr(self, key, value)

    def _apply_env_vars(self):
        """Apply environment variables with GISTMARKS_ prefix."""
        prefix = "GISTMARKS_"
        for key, value in os.environ.items():
            if key.startswith(prefix):
                config_key = key[len(prefix):].lower()
                if hasattr(self, config_key):
                    current_value = getattr(self, config_key)
                    if isinstance(current_value, bool):
                        setattr(self, config_key, value.lower() in ("true", "1", "yes"))
                    elif isinstance(current_value, int):
                        setattr(self, config_key, int(value))
                    else:
                        setattr(self, config_key, value)

        # The token is commonly exported under GitHub's own name
        if self.github_token is None and os.environ.get("GITHUB_TOKEN"):
            self.github_token = os.environ["GITHUB_TOKEN"]

    def _expand_paths(self):
        """Expand ~ and environment variables in paths."""
        self.state_file = os.path.expanduser(os.path.expandvars(self.state_file))

    def save(self, path: Optional[Path] = None):
        """
        Save current configuration to TOML file.

        Unset values are left out since TOML has no null.

        Args:
            path: Path to save to (defaults to user config)
        """
        if path is None:
            path = user_config_path()

        path.parent.mkdir(parents=True, exist_ok=True)

        data = {key: value for key, value in asdict(self).items() if value is not None}
        with open(path, "wb") as f:
            tomli_w.dump(data, f)

    def get_state_path(self) -> Path:
        return Path(self.state_file)


# Global configuration instance
_config: Optional[GistmarksConfig] = None


def get_config(reload: bool = False, config_file: Optional[Path] = None) -> GistmarksConfig:
    """
    Get the global configuration instance.

    Args:
        reload: Force reload configuration from files
        config_file: Specific config file to load

    Returns:
        Global configuration instance
    """
    global _config
    if _config is None or reload:
        _config = GistmarksConfig.load(config_file)
    return _config


def init_config(config_file: Optional[Path] = None, **kwargs) -> GistmarksConfig:
    """
    Initialize configuration with command-line overrides.

    Args:
        config_file: Config file to load on top of the defaults
        **kwargs: Configuration overrides; None values are ignored

    Returns:
        Configured instance
    """
    config = get_config(reload=config_file is not None, config_file=config_file)

    for key, value in kwargs.items():
        if hasattr(config, key) and value is not None:
            setattr(config, key, value)

    return config
