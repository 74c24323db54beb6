"""Settings: environment flags and the persisted user configuration.

The persisted record is a small JSON file. It keeps the original tool's
camel-case keys so an existing config.json keeps working.

Environment:
    PBI_WRAPPER_CONFIG_DIR        Where config.json lives
    PBI_WORKSPACES_DIR            Power BI Desktop workspaces root override
    PBI_WRAPPER_CAPTURE_MESSAGES  "1" to dump every rewritten message
    PBI_WRAPPER_CAPTURE_DIR       Where those dumps go (default ./captures)
"""

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path

import logfire

APP_NAME = "PowerBIPortWrapper"
CONFIG_FILE_NAME = "config.json"

CAPTURE_MESSAGES = os.environ.get("PBI_WRAPPER_CAPTURE_MESSAGES", "").lower() in ("1", "true", "yes")
CAPTURE_DIR = Path(os.environ.get("PBI_WRAPPER_CAPTURE_DIR", "captures"))

DEFAULT_FIXED_PORT = 55555
DEFAULT_NETWORK_PORT = 55556

# dataclass field -> key in config.json
_JSON_KEYS = {
    "fixed_port": "FixedPort",
    "allow_network_access": "AllowNetworkAccess",
    "network_port": "NetworkPort",
    "last_selected_instance": "LastSelectedInstance",
}


def default_config_dir() -> Path:
    """Per-user settings directory (honours PBI_WRAPPER_CONFIG_DIR)."""
    override = os.environ.get("PBI_WRAPPER_CONFIG_DIR")
    if override:
        return Path(override)

    appdata = os.environ.get("APPDATA")
    if appdata:
        return Path(appdata) / APP_NAME
    return Path.home() / ".config" / APP_NAME


@dataclass
class ProxyConfiguration:
    """What the user chose last time."""

    fixed_port: int = DEFAULT_FIXED_PORT
    allow_network_access: bool = False
    network_port: int = DEFAULT_NETWORK_PORT
    last_selected_instance: str | None = None

    def to_json(self) -> dict:
        return {_JSON_KEYS[name]: value for name, value in asdict(self).items()}

    @classmethod
    def from_json(cls, data: dict) -> "ProxyConfiguration":
        """Build from a parsed config.json. Missing keys keep their defaults."""
        config = cls()
        for name, key in _JSON_KEYS.items():
            if key in data and data[key] is not None:
                setattr(config, name, data[key])
        config.fixed_port = int(config.fixed_port)
        config.network_port = int(config.network_port)
        config.allow_network_access = bool(config.allow_network_access)
        return config


class ConfigurationManager:
    """Load/save ProxyConfiguration as JSON."""

    def __init__(self, config_dir: str | Path | None = None):
        self._config_dir = Path(config_dir) if config_dir is not None else default_config_dir()
        self._config_file_path = self._config_dir / CONFIG_FILE_NAME

    @property
    def config_file_path(self) -> Path:
        return self._config_file_path

    def load(self) -> ProxyConfiguration:
        """Read config.json. Missing or unreadable files give the defaults."""
        if not self._config_file_path.exists():
            return ProxyConfiguration()

        try:
            data = json.loads(self._config_file_path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            return ProxyConfiguration.from_json(data)
        except (OSError, ValueError, TypeError) as e:
            logfire.warning(f"Error loading configuration from {self._config_file_path}: {e}")
            return ProxyConfiguration()

    def save(self, config: ProxyConfiguration) -> None:
        """Write config.json, creating the directory if needed. Errors propagate."""
        try:
            self._config_dir.mkdir(parents=True, exist_ok=True)
            self._config_file_path.write_text(
                json.dumps(config.to_json(), indent=2),
                encoding="utf-8",
            )
        except OSError as e:
            logfire.error(f"Error saving configuration: {e}")
            raise
        logfire.debug(f"Saved configuration to {self._config_file_path}")
