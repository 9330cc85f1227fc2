"""Wait for asynchronous server-side operations to finish.

Install, update, configure, backup, restore, clone, uninstall and restart
all return immediately and keep working on the server. The poller fetches a
status resource once per interval until the operation reaches a terminal
state, printing progress as it goes.

Polling has no limit by default: installs can take many minutes. A timeout
can be set through ``CLOUDRON_POLL_TIMEOUT``.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
from rich.console import Console

from ..api import OperationError, OperationTimeoutError
from ..api.client import response_json

logger = logging.getLogger(__name__)

Fetch = Callable[[], Awaitable[httpx.Response]]
Predicate = Callable[[httpx.Response, Dict[str, Any]], bool]
FailureCheck = Callable[[httpx.Response, Dict[str, Any]], Optional[str]]
ProgressExtractor = Callable[[Dict[str, Any]], Optional[str]]

TICK = "."
WAITING_TO_START = "Waiting to start installation"
# Image creation is reported once and then runs quietly
QUIET_PROGRESS_MARKER = "Creating image"


class PollState(Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    HEALTH_WAITING = "health_waiting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class Operation:
    """What to poll and how to judge each answer."""

    name: str
    fetch: Fetch
    is_complete: Predicate
    failure_message: FailureCheck = lambda response, body: None
    progress: Optional[ProgressExtractor] = None
    wait_for_health: bool = False
    # Label for unexpected status codes, e.g. "Failed to get app."
    error_label: str = "Failed to get status."


def progress_label(progress: str) -> str:
    """Human label of a progress value such as "20, Downloading image"."""
    parts = progress.split(",")
    label = parts[1] if len(parts) == 2 else progress
    return label.strip()


class ProgressReporter:
    """Writes poll progress to the console without line breaks between ticks."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()

    def label(self, text: str) -> None:
        self.console.print(f"\n => [cyan]{text}[/cyan] ", end="")

    def tick(self) -> None:
        self.console.print(TICK, end="")


class OperationPoller:
    """State machine driving one operation from submission to a terminal state.

    States: SUBMITTED -> POLLING -> (HEALTH_WAITING) -> DONE, or FAILED from
    any polling state.
    """

    def __init__(
        self,
        reporter: Optional[ProgressReporter] = None,
        interval: float = 1.0,
        timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.reporter = reporter or ProgressReporter()
        self.interval = interval
        self.timeout = timeout
        self._sleep = sleep
        self.state = PollState.SUBMITTED
        self.polls = 0
        self._elapsed = 0.0
        self._last_progress: Optional[str] = None
        self._seen_progress = False

    async def run(self, operation: Operation) -> Dict[str, Any]:
        """Poll until the operation completes. Returns the last status body.

        Raises:
            OperationError: On transport error, unexpected status or reported failure
            OperationTimeoutError: If a timeout is configured and exceeded
        """
        self.state = PollState.POLLING
        try:
            body = await self._poll_until_complete(operation)
            if operation.wait_for_health:
                body = await self._wait_for_health(operation)
        except OperationError:
            self.state = PollState.FAILED
            raise
        self.state = PollState.DONE
        return body

    async def wait_until_healthy(self, operation: Operation) -> Dict[str, Any]:
        """Run only the health sub-wait, e.g. after a restart."""
        try:
            body = await self._wait_for_health(operation)
        except OperationError:
            self.state = PollState.FAILED
            raise
        self.state = PollState.DONE
        return body

    async def _wait_for_health(self, operation: Operation) -> Dict[str, Any]:
        self.state = PollState.HEALTH_WAITING
        self.reporter.label("Wait for health check")
        await self._wait()
        return await self._poll_until_healthy(operation)

    async def _wait(self) -> None:
        if self.timeout is not None and self._elapsed + self.interval > self.timeout:
            raise OperationTimeoutError(f"Timed out after {self.timeout:g} seconds waiting for the operation")
        await self._sleep(self.interval)
        self._elapsed += self.interval

    async def _check(self, operation: Operation) -> Tuple[httpx.Response, Dict[str, Any]]:
        self.polls += 1
        try:
            response = await operation.fetch()
        except httpx.TransportError as e:
            raise OperationError(f"{operation.error_label} {e}")
        return response, response_json(response)

    async def _poll_until_complete(self, operation: Operation) -> Dict[str, Any]:
        while True:
            response, body = await self._check(operation)

            failure = None
            if response.is_success:
                failure = operation.failure_message(response, body)
            if failure is not None:
                raise OperationError(failure)

            if operation.is_complete(response, body):
                logger.debug("%s complete after %d polls", operation.name, self.polls)
                return body

            if not response.is_success:
                raise OperationError(f"{operation.error_label} {response.status_code} - {response.text}")

            self._report(operation, body)
            await self._wait()

    async def _poll_until_healthy(self, operation: Operation) -> Dict[str, Any]:
        while True:
            response, body = await self._check(operation)
            if not response.is_success:
                raise OperationError(f"{operation.error_label} {response.status_code} - {response.text}")

            # installationState is not checked here, it can be pending_backup etc
            if body.get("health") == "healthy":
                return body

            self.reporter.tick()
            await self._wait()

    def _report(self, operation: Operation, body: Dict[str, Any]) -> None:
        if operation.progress is None:
            self.reporter.tick()
            return

        progress = operation.progress(body)
        if self._seen_progress and progress == self._last_progress:
            if progress and QUIET_PROGRESS_MARKER not in progress:
                self.reporter.tick()
        elif progress is not None:
            self.reporter.label(progress_label(progress))
        else:
            self.reporter.label(WAITING_TO_START)

        self._seen_progress = True
        self._last_progress = progress


# Predicates for the status resources the Cloudron exposes


def installation_operation(fetch: Fetch, wait_for_health: bool = False, name: str = "installation") -> Operation:
    """Install, update, configure, backup, restore and clone of one app."""
    return Operation(
        name=name,
        fetch=fetch,
        is_complete=lambda response, body: body.get("installationState") == "installed",
        failure_message=lambda response, body: (
            body.get("installationProgress") or "Unknown error"
            if body.get("installationState") == "error" else None
        ),
        progress=lambda body: body.get("installationProgress"),
        wait_for_health=wait_for_health,
        error_label="Failed to get app.",
    )


def uninstall_operation(fetch: Fetch) -> Operation:
    """Uninstall is done once the app resource is gone."""
    return Operation(
        name="uninstall",
        fetch=fetch,
        is_complete=lambda response, body: response.status_code == 404,
        error_label="Failed to get app.",
    )


def run_state_operation(fetch: Fetch, target: str) -> Operation:
    """Stop or start of an app, done when runState reaches ``target``."""
    return Operation(
        name=f"run state {target}",
        fetch=fetch,
        is_complete=lambda response, body: body.get("runState") == target,
        error_label="Failed to get app.",
    )


def health_operation(fetch: Fetch) -> Operation:
    """Only the health sub-wait, see ``OperationPoller.wait_until_healthy``."""
    return Operation(
        name="health",
        fetch=fetch,
        is_complete=lambda response, body: body.get("health") == "healthy",
        wait_for_health=True,
        error_label="Failed to get app.",
    )


def _box_backup_failure(response: httpx.Response, body: Dict[str, Any]) -> Optional[str]:
    backup = body.get("backup") or {}
    if (backup.get("percent") or 0) >= 100 and backup.get("message"):
        return f"Backup failed: {backup['message']}"
    return None


def box_backup_operation(fetch: Fetch) -> Operation:
    """Box-wide backup, tracked through the cloudron progress resource."""
    return Operation(
        name="box backup",
        fetch=fetch,
        is_complete=lambda response, body: ((body.get("backup") or {}).get("percent") or 0) >= 100,
        failure_message=_box_backup_failure,
        error_label="Failed to get backup progress.",
    )
