"""
Configuration management for cloudmark.

Two layers live here:

- ``CloudmarkConfig``: process-level options (data directory, logging,
  relay), resolved from defaults, TOML files and ``CLOUDMARK_*``
  environment variables.
- ``Settings``: the user-editable backup settings (WebDAV endpoint,
  retention, client identifier). They are stored in the data directory and
  re-read before every operation.
"""
import os
import uuid
import tomli
import tomli_w
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, field, asdict

from cloudmark.constants import (
    DEBOUNCE_DELAY_MS,
    DEFAULT_CLIENT_IDENTIFIER,
    DEFAULT_FREQUENCY_HOURS,
    DEFAULT_MAX_SNAPSHOTS,
    WARMUP_SECONDS,
)
from cloudmark.utils import atomic_write


@dataclass
class CloudmarkConfig:
    """
    cloudmark configuration with sensible defaults.

    Configuration hierarchy (highest to lowest priority):
    1. Command-line arguments
    2. Environment variables (CLOUDMARK_*)
    3. Local config file (./cloudmark.toml)
    4. User config file (~/.config/cloudmark/config.toml)
    5. System defaults
    """

    # Storage
    data_dir: str = field(default="~/.cloudmark")

    # Logging
    log_level: str = field(default="INFO")

    # Transport: route WebDAV calls through a same-origin relay when set
    relay_url: Optional[str] = field(default=None)

    # Relay server
    relay_host: str = field(default="127.0.0.1")
    relay_port: int = field(default=8765)

    # Scheduling
    debounce_ms: int = field(default=DEBOUNCE_DELAY_MS)
    warmup_seconds: int = field(default=WARMUP_SECONDS)

    @classmethod
    def load(cls, config_file: Optional[Path] = None) -> "CloudmarkConfig":
        """
        Load configuration from files and environment.

        Args:
            config_file: Specific config file to load (overrides search)

        Returns:
            Merged configuration object
        """
        config = cls()

        user_config_path = Path.home() / ".config" / "cloudmark" / "config.toml"
        if user_config_path.exists():
            config._merge(cls._load_toml(user_config_path))

        local_paths = [
            Path.cwd() / "cloudmark.toml",
            Path.cwd() / ".cloudmark.toml",
        ]
        for path in local_paths:
            if path.exists():
                config._merge(cls._load_toml(path))
                break

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
        """Apply environment variables with CLOUDMARK_ prefix."""
        prefix = "CLOUDMARK_"
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

    def _expand_paths(self):
        """Expand ~ and environment variables in paths."""
        value = self.data_dir
        if isinstance(value, str):
            self.data_dir = os.path.expanduser(os.path.expandvars(value))

    def save(self, path: Optional[Path] = None):
        """
        Save current configuration to TOML file.

        Args:
            path: Path to save to (defaults to user config)

        Returns:
            The path written
        """
        if path is None:
            path = Path.home() / ".config" / "cloudmark" / "config.toml"

        # TOML has no null
        data = {k: v for k, v in asdict(self).items() if v is not None}
        atomic_write(path, tomli_w.dumps(data))
        return path

    def get_data_dir(self) -> Path:
        """Get the resolved data directory."""
        path = Path(self.data_dir)
        if not path.is_absolute():
            path = Path.cwd() / path
        return path


@dataclass
class WebDavSettings:
    url: str = ""
    username: str = ""
    password: str = ""


@dataclass
class BackupSettings:
    enabled: bool = True
    frequency_hours: float = float(DEFAULT_FREQUENCY_HOURS)
    max_snapshots: int = DEFAULT_MAX_SNAPSHOTS


@dataclass
class ClientSettings:
    identifier: str = ""


@dataclass
class Settings:
    """User-editable backup settings."""

    webdav: WebDavSettings = field(default_factory=WebDavSettings)
    backup: BackupSettings = field(default_factory=BackupSettings)
    client: ClientSettings = field(default_factory=ClientSettings)

    @classmethod
    def defaults(cls) -> "Settings":
        """First-run settings with a freshly generated client identifier."""
        settings = cls()
        settings.client.identifier = generate_client_identifier()
        return settings

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Settings":
        """
        Build settings from a nested dict, ignoring unknown keys.

        Accepts the camelCase keys used by older settings exports
        (``frequencyHours``, ``maxSnapshots``).
        """
        data = data or {}
        webdav = data.get("webdav") or {}
        backup = dict(data.get("backup") or {})
        client = data.get("client") or {}

        if "frequencyHours" in backup:
            backup.setdefault("frequency_hours", backup["frequencyHours"])
        if "maxSnapshots" in backup:
            backup.setdefault("max_snapshots", backup["maxSnapshots"])

        defaults = BackupSettings()
        return cls(
            webdav=WebDavSettings(
                url=webdav.get("url") or "",
                username=webdav.get("username") or "",
                password=webdav.get("password") or "",
            ),
            backup=BackupSettings(
                enabled=bool(backup.get("enabled", defaults.enabled)),
                frequency_hours=float(backup.get("frequency_hours", defaults.frequency_hours)),
                max_snapshots=int(backup.get("max_snapshots", defaults.max_snapshots)),
            ),
            client=ClientSettings(identifier=client.get("identifier") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def is_configured(self) -> bool:
        """Whether a WebDAV URL has been set."""
        return bool(self.webdav.url and self.webdav.url.strip())

    @property
    def client_identifier(self) -> str:
        return self.client.identifier or DEFAULT_CLIENT_IDENTIFIER

    def set_value(self, dotted_key: str, raw: str):
        """
        Set a setting from a ``section.field`` key and a string value.

        Raises:
            KeyError: Unknown section or field
            ValueError: Value cannot be converted to the field's type
        """
        section_name, _, field_name = dotted_key.partition(".")
        section = getattr(self, section_name, None)
        if section is None or not field_name or not hasattr(section, field_name):
            raise KeyError(f"Unknown setting: {dotted_key}")

        current = getattr(section, field_name)
        if isinstance(current, bool):
            value = raw.lower() in ("true", "1", "yes", "on")
        elif isinstance(current, int):
            value = int(raw)
        elif isinstance(current, float):
            value = float(raw)
        else:
            value = raw
        setattr(section, field_name, value)


def generate_client_identifier() -> str:
    """Short uppercase identifier embedded in every snapshot name."""
    return uuid.uuid4().hex[:8].upper()


def load_settings(path: Path) -> Settings:
    """Read settings from a TOML file; missing files yield defaults."""
    if not path.exists():
        return Settings()
    with open(path, "rb") as f:
        return Settings.from_dict(tomli.load(f))


def save_settings(settings: Settings, path: Path):
    """Write settings to a TOML file atomically."""
    atomic_write(path, tomli_w.dumps(settings.to_dict()))


# Global configuration instance
_config: Optional[CloudmarkConfig] = None


def get_config(reload: bool = False, config_file: Optional[Path] = None) -> CloudmarkConfig:
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
        _config = CloudmarkConfig.load(config_file)
    return _config


def init_config(data_dir: Optional[str] = None, **kwargs) -> CloudmarkConfig:
    """
    Initialize configuration with command-line overrides.

    Args:
        data_dir: Data directory override
        **kwargs: Other configuration overrides

    Returns:
        Configured instance
    """
    config = get_config(config_file=kwargs.pop("config_file", None))

    if data_dir:
        config.data_dir = os.path.expanduser(data_dir)

    for key, value in kwargs.items():
        if hasattr(config, key) and value is not None:
            setattr(config, key, value)

    return config
