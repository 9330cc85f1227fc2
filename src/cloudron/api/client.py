"""
HTTP client for the Cloudron REST API.

Every authenticated request carries the session's access token as the
``access_token`` query parameter. Transport errors (no HTTP response at all)
propagate as ``httpx.TransportError``; status handling is left to callers,
which use ``expect_status`` to turn unexpected answers into ``APIError``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Union

import httpx

from . import APIError, CLIModeDisabledError, CloudronError, Session
from ..core.settings import settings

logger = logging.getLogger(__name__)


class APIClient:
    """
    Async HTTP client bound to one Cloudron session.

    Usage:
        async with APIClient(session) as client:
            response = await client.get("/api/v1/apps")
    """

    def __init__(
        self,
        session: Session,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the API client.

        Args:
            session: Login context providing endpoint and token.
            timeout: Request timeout in seconds. Defaults to CLOUDRON_HTTP_TIMEOUT.
            transport: Optional httpx transport, used by tests.
        """
        self.session = session
        self.timeout = timeout if timeout is not None else settings.http_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "APIClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.session.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _params(self, params: Optional[Dict[str, Any]], authenticated: bool) -> Dict[str, Any]:
        merged = dict(params or {})
        if authenticated:
            merged["access_token"] = self.session.require_login().token
        return merged

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Make an HTTP request to the Cloudron.

        Args:
            method: HTTP method (GET, POST, etc.)
            path: API path (e.g., /api/v1/apps)
            params: Query parameters; the access token is added automatically
            authenticated: Whether to send the access token
            **kwargs: Additional arguments for httpx

        Returns:
            httpx.Response

        Raises:
            httpx.HTTPError: On request failure
        """
        client = await self._get_client()
        logger.debug("API request %s %s", method, path)

        try:
            response = await client.request(
                method, path, params=self._params(params, authenticated), **kwargs
            )
        except httpx.HTTPError as e:
            logger.debug("API request %s %s failed: %s", method, path, e)
            raise

        logger.debug("API response %s %s -> %s", method, path, response.status_code)
        return response

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        """Make a GET request."""
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        """Make a POST request."""
        return await self.request("POST", path, **kwargs)

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> AsyncIterator[httpx.Response]:
        """Make a request whose body is consumed incrementally."""
        client = await self._get_client()
        logger.debug("API stream %s %s", method, path)
        async with client.stream(
            method, path, params=self._params(params, True), timeout=None, **kwargs
        ) as response:
            yield response


def expect_status(
    response: httpx.Response,
    expected: Union[int, Iterable[int]],
    message: str,
) -> httpx.Response:
    """Raise APIError unless the response has one of the expected statuses.

    The error message carries the status code and the response text.
    """
    allowed = {expected} if isinstance(expected, int) else set(expected)
    if response.status_code not in allowed:
        raise APIError(
            f"{message} {response.status_code} - {response.text}",
            status_code=response.status_code,
        )
    return response


def developer_mode_notice(session: Session) -> str:
    return f"CLI mode is disabled. Enable it at {session.settings_url()}."


async def detect_api_endpoint(
    cloudron: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Session:
    """Find the API endpoint of a Cloudron from its hostname.

    Accepts "example.com", "my.example.com", "my-example.com" or a full URL,
    then probes "my-<host>" and "my.<host>" for the status route.

    Raises:
        CloudronError: If neither endpoint answers like a Cloudron
    """
    host = cloudron.strip()
    if host.startswith("https://"):
        host = host[len("https://"):]
    for prefix in ("my-", "my."):
        if host.startswith(prefix):
            host = host[len(prefix):]
            break
    host = host.split("/", 1)[0]

    async with httpx.AsyncClient(timeout=settings.http_timeout, transport=transport) as client:
        for endpoint in (f"my-{host}", f"my.{host}"):
            try:
                response = await client.get(f"https://{endpoint}/api/v1/cloudron/status")
            except httpx.HTTPError as e:
                logger.debug("No Cloudron at %s: %s", endpoint, e)
                continue
            if response.status_code == 200 and response_json(response).get("version"):
                return Session(cloudron=host, api_endpoint=endpoint)

    raise CloudronError("Cloudron not found")


async def login(
    session: Session,
    username: str,
    password: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Exchange developer credentials for an access token.

    Raises:
        CLIModeDisabledError: If the Cloudron has CLI access turned off
        APIError: If the credentials are rejected
    """
    async with APIClient(session, transport=transport) as client:
        response = await client.post(
            "/api/v1/developer/login",
            authenticated=False,
            json={"username": username, "password": password},
        )

    if response.status_code == 412:
        raise CLIModeDisabledError(developer_mode_notice(session), status_code=412)
    if response.status_code != 200:
        raise APIError("Login failed.", status_code=response.status_code)

    token = response_json(response).get("token")
    if not token:
        raise APIError("Login failed. No token in response.", status_code=response.status_code)
    return token


def response_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
