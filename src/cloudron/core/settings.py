"""CLI settings and environment variables."""

import os
from typing import List, Optional


class SettingsError(ValueError):
    """Raised when an environment variable holds an unusable value."""
    pass


class Settings:
    """Global settings for the Cloudron CLI."""

    DEFAULT_APPSTORE_ORIGIN = "https://api.cloudron.io"

    def __init__(self) -> None:
        """Initialize settings from environment variables."""
        # Malformed values fall back to the default and are reported by check()
        self.errors: List[str] = []

        self.config_file = os.path.expanduser(
            os.getenv("CLOUDRON_CONFIG_FILE", "~/.cloudron.json")
        )

        # Overrides the app store origin saved in the config file
        self.appstore_origin = os.getenv("APPSTORE_ORIGIN", "")

        # Debug mode
        self.debug = os.getenv("CLOUDRON_DEBUG", "false").lower() in ("true", "1", "yes")

        # Polling of asynchronous operations. No timeout unless one is set.
        self.poll_interval = self._float_env("CLOUDRON_POLL_INTERVAL", 1.0)
        self.poll_timeout = self._float_env("CLOUDRON_POLL_TIMEOUT", None)

        self.http_timeout = self._float_env("CLOUDRON_HTTP_TIMEOUT", 30.0)

    def _float_env(self, name: str, default: Optional[float]) -> Optional[float]:
        value = os.getenv(name, "").strip()
        if not value:
            return default
        try:
            return float(value)
        except ValueError:
            self.errors.append(f"{name} must be a number, got {value!r}")
            return default

    def check(self) -> None:
        """Raise SettingsError for the first malformed environment variable."""
        if self.errors:
            raise SettingsError(self.errors[0])

    @property
    def has_appstore_override(self) -> bool:
        """Check if the app store origin comes from the environment."""
        return bool(self.appstore_origin)


# Global settings instance
settings = Settings()
