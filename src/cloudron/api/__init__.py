"""Core API types and errors for the Cloudron client."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any


@dataclass
class Application:
    """An application installed on a Cloudron, as returned by the API."""

    id: str
    location: str
    manifest: Dict[str, Any]
    installation_state: str = ""
    run_state: str = ""
    health: Optional[str] = None
    app_store_id: Optional[str] = None
    port_bindings: Dict[str, Any] = field(default_factory=dict)
    access_restriction: Optional[Dict[str, Any]] = None
    oauth_proxy: bool = False
    last_backup_id: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate application data after initialization."""
        if not self.id:
            raise ValueError("Application ID cannot be empty")

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Application":
        """Build an Application from an API response body."""
        return cls(
            id=data.get("id", ""),
            location=data.get("location", ""),
            manifest=data.get("manifest") or {},
            installation_state=data.get("installationState", ""),
            run_state=data.get("runState", ""),
            health=data.get("health"),
            app_store_id=data.get("appStoreId") or None,
            port_bindings=data.get("portBindings") or {},
            access_restriction=data.get("accessRestriction"),
            oauth_proxy=bool(data.get("oauthProxy", False)),
            last_backup_id=data.get("lastBackupId"),
        )

    @property
    def manifest_id(self) -> str:
        return self.manifest.get("id", "")

    @property
    def version(self) -> str:
        return self.manifest.get("version", "")

    @property
    def title(self) -> str:
        return self.manifest.get("title", "")

    @property
    def is_local(self) -> bool:
        """Apps without an app store id were installed from a local manifest."""
        return not self.app_store_id


@dataclass(frozen=True)
class Session:
    """Login context passed explicitly to every authenticated operation."""

    cloudron: Optional[str] = None
    api_endpoint: Optional[str] = None
    token: Optional[str] = None
    app_store_origin: str = "https://api.cloudron.io"

    @classmethod
    def from_config(cls, config: Any) -> "Session":
        """Build a session from a configuration store."""
        return cls(
            cloudron=config.cloudron(),
            api_endpoint=config.api_endpoint(),
            token=config.token(),
            app_store_origin=config.app_store_origin(),
        )

    @property
    def is_logged_in(self) -> bool:
        return bool(self.api_endpoint and self.token)

    @property
    def base_url(self) -> str:
        if not self.api_endpoint:
            raise NotLoggedInError("Use cloudron login first")
        return f"https://{self.api_endpoint}"

    def require_login(self) -> "Session":
        """Return self, or raise if there is no endpoint or token."""
        if not self.is_logged_in:
            raise NotLoggedInError("Use cloudron login first")
        return self

    def app_domain(self, location: str) -> str:
        """Public domain of an app at the given location."""
        if not location:
            return self.cloudron or ""
        separator = "-" if (self.api_endpoint or "").startswith("my-") else "."
        return f"{location}{separator}{self.cloudron}"

    def settings_url(self) -> str:
        return f"https://{self.api_endpoint}/#/settings"


class CloudronError(Exception):
    """Base exception for Cloudron client errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        self.timestamp = datetime.now().isoformat()


class NotLoggedInError(CloudronError):
    """Raised when an authenticated call is made without a login."""
    pass


class AppNotFoundError(CloudronError):
    """Raised when no matching application can be found."""
    pass


class APIError(CloudronError):
    """Raised when the Cloudron API answers with an unexpected status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OperationError(CloudronError):
    """Raised when a polled operation fails or cannot be observed."""
    pass


class OperationTimeoutError(OperationError):
    """Raised when a polled operation exceeds the configured timeout."""
    pass


class ExecError(CloudronError):
    """Raised when an exec session cannot be started or breaks."""
    pass


class UpgradeError(ExecError):
    """Raised when the server refuses to upgrade the exec connection."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CLIModeDisabledError(UpgradeError):
    """Raised when the Cloudron does not accept CLI access (HTTP 412)."""
    pass


class AdminRequiredError(UpgradeError):
    """Raised when the operation needs admin privileges (HTTP 403)."""
    pass
