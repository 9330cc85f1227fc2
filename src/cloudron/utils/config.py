"""Configuration store for the Cloudron login session."""

import json
import os
from pathlib import Path
from typing import Dict, Any, Optional, Union

from ..core.settings import Settings


class ConfigError(Exception):
    """Base exception for configuration-related errors."""
    pass


class Config:
    """Flat key-value configuration persisted to ~/.cloudron.json.

    Holds the current login (cloudron host, api endpoint, access token) and
    the app store origin. Every mutation is written back to disk.
    """

    DEFAULT_CONFIG_FILE = "~/.cloudron.json"
    DEFAULT_APPSTORE_ORIGIN = Settings.DEFAULT_APPSTORE_ORIGIN

    def __init__(self, config_file: Optional[str] = None) -> None:
        """Initialize configuration store.

        Args:
            config_file: Custom configuration file. Defaults to ~/.cloudron.json
        """
        self.config_file = Path(os.path.expanduser(config_file or self.DEFAULT_CONFIG_FILE))
        self._data = self._load_json_file(self.config_file)

        # precedence: env var, config file, default
        env_origin = os.getenv("APPSTORE_ORIGIN")
        if env_origin:
            self._data["appStoreOrigin"] = env_origin
        elif not self._data.get("appStoreOrigin"):
            self._data["appStoreOrigin"] = self.DEFAULT_APPSTORE_ORIGIN

    def _load_json_file(self, file_path: Path) -> Dict[str, Any]:
        """Load JSON file with error handling.

        Args:
            file_path: Path to JSON file

        Returns:
            Parsed JSON object, or an empty dict if the file doesn't exist

        Raises:
            ConfigError: If file exists but cannot be parsed
        """
        if not file_path.exists():
            return {}

        try:
            data = json.loads(file_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to load {file_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Failed to load {file_path}: not a JSON object")
        return data

    def _save(self) -> None:
        """Write the configuration atomically.

        Raises:
            ConfigError: If save operation fails
        """
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.config_file.with_suffix(self.config_file.suffix + ".tmp")

            with temp_path.open('w') as f:
                json.dump(self._data, f, indent=4)
            os.chmod(temp_path, 0o600)

            temp_path.replace(self.config_file)

        except OSError as e:
            raise ConfigError(f"Failed to save {self.config_file}: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Dotted keys ("a.b") look into nested objects.
        """
        value: Any = self._data
        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    def set(self, key: Union[str, Dict[str, Any]], value: Any = None) -> None:
        """Set a configuration value, or merge a mapping of values."""
        if isinstance(key, dict):
            self._data.update(key)
        else:
            self._data[key] = value
        self._save()

    def unset(self, *keys: str) -> None:
        """Remove one or more keys."""
        for key in keys:
            self._data.pop(key, None)
        self._save()

    def has(self, *keys: str) -> bool:
        """Check that all of the given keys are present."""
        return all(key in self._data for key in keys)

    def clear(self) -> None:
        """Forget everything and delete the configuration file."""
        self._data = {"appStoreOrigin": self.app_store_origin()}
        try:
            self.config_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ConfigError(f"Failed to remove {self.config_file}: {e}")

    # convenience

    def token(self) -> Optional[str]:
        return self.get("token")

    def cloudron(self) -> Optional[str]:
        return self.get("cloudron")

    def api_endpoint(self) -> Optional[str]:
        return self.get("apiEndpoint")

    def app_store_origin(self) -> str:
        return self.get("appStoreOrigin", self.DEFAULT_APPSTORE_ORIGIN)
