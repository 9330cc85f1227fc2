"""Application operations against the Cloudron REST API."""

import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from . import APIError, AppNotFoundError, Application, NotLoggedInError
from .client import APIClient, expect_status, response_json
from ..core.poller import (
    Fetch,
    OperationPoller,
    ProgressReporter,
    box_backup_operation,
    health_operation,
    installation_operation,
    run_state_operation,
    uninstall_operation,
)
from ..core.settings import settings

logger = logging.getLogger(__name__)

INSTALL = "install"
CONFIGURE = "configure"
UPDATE = "update"

# past tense used in messages, e.g. "App is being installed"
ACTION_MESSAGES = {INSTALL: "installed", CONFIGURE: "configured", UPDATE: "updated"}

CONTAINER_CMD_ERROR = "Container command could not be invoked."

# OAuth clients created from the CLI belong to this pseudo app
OAUTH_DEVELOPMENT_APP_ID = "localdevelopment"


def choose_install_action(app: Optional[Application], configure: bool, location: Optional[str]) -> str:
    """Pick the route for an install: a new app, a reconfiguration or an update.

    Installing over an existing app with a different location reconfigures it.
    """
    if app is None:
        return INSTALL
    if configure or (location is not None and location != app.location):
        return CONFIGURE
    return UPDATE


def install_payload(
    manifest: Dict[str, Any],
    location: str,
    port_bindings: Dict[str, Any],
    access_restriction: Optional[Dict[str, Any]] = None,
    oauth_proxy: bool = False,
    force: bool = False,
    app_store_id: Optional[str] = None,
    app_id: Optional[str] = None,
    icon: Optional[str] = None,
) -> Dict[str, Any]:
    """Body for the install, configure and update routes.

    The Cloudron ignores the manifest when an app store id is given.
    """
    data = {
        "appId": app_id,
        "appStoreId": app_store_id or "",
        "manifest": None if app_store_id else manifest,
        "location": location,
        "portBindings": port_bindings,
        "accessRestriction": access_restriction,
        "oauthProxy": oauth_proxy,
        "force": force,
    }
    if icon:
        data["icon"] = icon
    return data


def format_log_line(entry: Dict[str, Any]) -> str:
    """One log entry as "HH:MM:SS [source] message"."""
    message = entry.get("message")
    if message is None:
        message = "[large binary blob skipped]"
    elif isinstance(message, list):
        message = bytes(message).decode("utf-8", errors="replace")

    timestamp = entry.get("realtimeTimestamp")
    if timestamp is not None:
        # journald timestamps are in microseconds
        ts = datetime.fromtimestamp(timestamp / 1_000_000).strftime("%H:%M:%S")
    else:
        ts = "--:--:--"
    return f"{ts} [{entry.get('source', '')}] {message}"


class AppManager:
    """High-level app operations on one Cloudron.

    Submitting methods return as soon as the server accepted the request;
    the ``wait_*`` methods poll until the operation is finished.
    """

    def __init__(
        self,
        client: APIClient,
        reporter: Optional[ProgressReporter] = None,
        poll_interval: Optional[float] = None,
        poll_timeout: Optional[float] = None,
    ) -> None:
        self.client = client
        self.reporter = reporter or ProgressReporter()
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval
        self.poll_timeout = poll_timeout if poll_timeout is not None else settings.poll_timeout

    def new_poller(self) -> OperationPoller:
        return OperationPoller(self.reporter, interval=self.poll_interval, timeout=self.poll_timeout)

    def app_status(self, app_id: str) -> Fetch:
        """Fetch callable for the app resource, used as a poll target."""
        return lambda: self.client.get(f"/api/v1/apps/{app_id}")

    def box_progress(self) -> Fetch:
        return lambda: self.client.get("/api/v1/cloudron/progress")

    # queries

    async def list_apps(self) -> List[Application]:
        response = await self.client.get("/api/v1/apps")
        if response.status_code == 401:
            raise NotLoggedInError("Use cloudron login first")
        expect_status(response, 200, "Failed to list apps.")
        return [Application.from_api(app) for app in response.json().get("apps", [])]

    async def list_apps_raw(self) -> List[Dict[str, Any]]:
        response = await self.client.get("/api/v1/apps")
        if response.status_code == 401:
            raise NotLoggedInError("Use cloudron login first")
        expect_status(response, 200, "Failed to list apps.")
        return response.json().get("apps", [])

    async def get_app(self, app_id: str) -> Application:
        """Fetch one app.

        Raises:
            AppNotFoundError: If no app has this id
            APIError: If the Cloudron is updating or answers unexpectedly
        """
        response = await self.client.get(f"/api/v1/apps/{app_id}")
        if response.status_code == 503:
            raise APIError("The Cloudron is currently updating, please retry in a bit.", status_code=503)
        if response.status_code == 404:
            raise AppNotFoundError(f"App {app_id} not found.")
        expect_status(response, 200, "Failed to get app.")
        return Application.from_api(response.json())

    async def find_local_apps(self, manifest_id: str) -> List[Application]:
        """Apps installed from a local manifest with the given id.

        Apps installed from the store are never matched.
        """
        apps = await self.list_apps()
        return [app for app in apps if app.is_local and app.manifest_id == manifest_id]

    async def list_users(self) -> List[Dict[str, Any]]:
        response = await self.client.get("/api/v1/users")
        expect_status(response, 200, "Failed to list users.")
        return response.json().get("users", [])

    async def list_backups(self, app_id: str) -> List[Dict[str, Any]]:
        response = await self.client.get(f"/api/v1/apps/{app_id}/backups")
        expect_status(response, 200, "Failed to list backups.")
        return response.json().get("backups", [])

    async def fetch_store_manifest(self, app_store_id: str) -> Dict[str, Any]:
        """Download the manifest of a store app, "id" or "id@version"."""
        store_id, _, version = app_store_id.partition("@")
        url = f"{self.client.session.app_store_origin}/api/v1/apps/{store_id}"
        if version:
            url += f"/versions/{version}"

        try:
            response = await self.client.get(url, authenticated=False)
        except httpx.TransportError as e:
            raise APIError(f"Failed to get app info from store: {e}")
        expect_status(response, 200, "Failed to get app info from store.")
        return response.json().get("manifest") or {}

    # state changes

    async def submit_install(self, action: str, data: Dict[str, Any], app_id: Optional[str] = None) -> str:
        """Post an install, configure or update. Returns the app id."""
        path = "/api/v1/apps/install" if action == INSTALL else f"/api/v1/apps/{app_id}/{action}"
        response = await self.client.post(path, json=data)

        if response.status_code == 404:
            raise APIError("Failed to install app. No such app in the appstore.", status_code=404)
        if response.status_code == 409:
            raise APIError(
                f"Failed to install app. The location {data.get('location')} is already used.",
                status_code=409,
            )
        if response.status_code == 403:
            raise APIError("Failed to install app. Admin privileges are required.", status_code=403)
        if response.status_code != 202:
            message = response_json(response).get("message", response.text)
            raise APIError(
                f"Failed to install app. {message} ({response.status_code})",
                status_code=response.status_code,
            )

        return app_id or response_json(response).get("id", "")

    async def uninstall(self, app_id: str) -> None:
        response = await self.client.post(f"/api/v1/apps/{app_id}/uninstall", json={})
        expect_status(response, 202, "Failed to uninstall app.")

    async def stop(self, app_id: str) -> None:
        response = await self.client.post(f"/api/v1/apps/{app_id}/stop", json={})
        expect_status(response, 202, "Failed to stop app.")

    async def start(self, app_id: str) -> None:
        response = await self.client.post(f"/api/v1/apps/{app_id}/start", json={})
        expect_status(response, 202, "Failed to start app.")

    async def backup(self, app_id: str) -> None:
        response = await self.client.post(f"/api/v1/apps/{app_id}/backup", json={})
        expect_status(response, 202, "Failed to backup app.")

    async def restore(self, app_id: str, backup_id: Optional[str]) -> None:
        response = await self.client.post(f"/api/v1/apps/{app_id}/restore", json={"backupId": backup_id})
        expect_status(response, 202, "Failed to restore app.")

    async def clone(
        self,
        app_id: str,
        backup_id: str,
        location: str,
        port_bindings: Dict[str, Any],
    ) -> str:
        """Clone an app from one of its backups. Returns the new app id."""
        response = await self.client.post(
            f"/api/v1/apps/{app_id}/clone",
            json={"backupId": backup_id, "location": location, "portBindings": port_bindings},
        )
        expect_status(response, 201, "Failed to clone app.")
        return response_json(response).get("id", "")

    async def create_box_backup(self) -> None:
        response = await self.client.post("/api/v1/backups", json={})
        expect_status(response, 202, "Failed to backup box.")

    async def create_oauth_credentials(self, redirect_uri: str, scope: str) -> Dict[str, Any]:
        """Register OAuth client credentials for an app developed locally.

        Returns the created client with ``id``, ``clientSecret`` and ``redirectURI``.

        Raises:
            APIError: With the server message on 400, otherwise on any status but 201
        """
        response = await self.client.post(
            "/api/v1/oauth/clients",
            json={"appId": OAUTH_DEVELOPMENT_APP_ID, "redirectURI": redirect_uri, "scope": scope},
        )
        if response.status_code == 400:
            message = response_json(response).get("message", response.text)
            raise APIError(message, status_code=400)
        expect_status(response, 201, "Failed to create oauth app credentials.")
        return response.json()

    # waiting

    async def wait_for_installation(self, app_id: str, wait_for_health: bool = False) -> Dict[str, Any]:
        """Wait for install-like operations (also backup, restore and clone)."""
        operation = installation_operation(self.app_status(app_id), wait_for_health=wait_for_health)
        return await self.new_poller().run(operation)

    async def wait_for_uninstall(self, app_id: str) -> None:
        self.reporter.label("Waiting for app to be uninstalled")
        await self.new_poller().run(uninstall_operation(self.app_status(app_id)))

    async def wait_for_run_state(self, app_id: str, target: str) -> Dict[str, Any]:
        verb = "stopped" if target == "stopped" else "started"
        self.reporter.label(f"Waiting for app to be {verb}")
        return await self.new_poller().run(run_state_operation(self.app_status(app_id), target))

    async def wait_until_healthy(self, app_id: str) -> Dict[str, Any]:
        return await self.new_poller().wait_until_healthy(health_operation(self.app_status(app_id)))

    async def wait_for_box_backup(self) -> Dict[str, Any]:
        self.reporter.console.print("Waiting for box backup to finish...", end="")
        return await self.new_poller().run(box_backup_operation(self.box_progress()))

    async def restart(self, app_id: str) -> None:
        """Stop, start and wait for the app to report healthy."""
        await self.stop(app_id)
        await self.wait_for_run_state(app_id, "stopped")
        await self.start(app_id)
        await self.wait_for_run_state(app_id, "running")
        await self.wait_until_healthy(app_id)

    # logs

    async def logs(self, app_id: str, lines: int = 500) -> AsyncIterator[Dict[str, Any]]:
        """Recent log entries, parsed from the newline-delimited JSON stream."""
        async with self.client.stream("GET", f"/api/v1/apps/{app_id}/logs", params={"lines": lines}) as response:
            if response.status_code != 200:
                await response.aread()
                expect_status(response, 200, "Failed to get logs.")
            async for line in response.aiter_lines():
                if line.strip():
                    yield json.loads(line)

    async def tail_logs(self, app_id: str, lines: int = 10) -> AsyncIterator[Dict[str, Any]]:
        """Follow the log event stream until the connection ends."""
        async with self.client.stream(
            "GET",
            f"/api/v1/apps/{app_id}/logstream",
            params={"lines": lines},
            headers={"Accept": "text/event-stream"},
        ) as response:
            if response.status_code == 401:
                raise NotLoggedInError("Use cloudron login first")
            if response.status_code == 412:
                raise APIError("Logs currently not available. App is not installed.", status_code=412)
            if response.status_code != 200:
                await response.aread()
                expect_status(response, 200, "Failed to stream logs.")

            data_lines: List[str] = []
            async for line in response.aiter_lines():
                if line.startswith("data:"):
                    data_lines.append(line[len("data:"):].lstrip())
                elif not line and data_lines:
                    yield json.loads("\n".join(data_lines))
                    data_lines = []
