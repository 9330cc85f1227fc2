"""Tests for the Cloudron API client."""

import json

import httpx
import pytest

from cloudron.api import APIError, CLIModeDisabledError, CloudronError, NotLoggedInError, Session
from cloudron.api.client import (
    APIClient,
    detect_api_endpoint,
    expect_status,
    login,
    response_json,
)


SESSION = Session(cloudron="example.com", api_endpoint="my.example.com", token="secret")


class TestAPIClient:
    """Test request construction."""

    @pytest.mark.asyncio
    async def test_authenticated_request(self):
        """Test the base URL and the access token parameter."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"apps": []})

        async with APIClient(SESSION, transport=httpx.MockTransport(handler)) as client:
            response = await client.get("/api/v1/apps", params={"lines": 10})

        assert response.status_code == 200
        assert str(seen[0].url).startswith("https://my.example.com/api/v1/apps?")
        assert seen[0].url.params["access_token"] == "secret"
        assert seen[0].url.params["lines"] == "10"

    @pytest.mark.asyncio
    async def test_unauthenticated_request(self):
        """Test requests can be sent without the token."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        async with APIClient(SESSION, transport=httpx.MockTransport(handler)) as client:
            await client.post("/api/v1/developer/login", authenticated=False, json={"a": 1})

        assert "access_token" not in seen[0].url.params
        assert json.loads(seen[0].content) == {"a": 1}

    @pytest.mark.asyncio
    async def test_requires_login(self):
        """Test authenticated calls fail without token."""
        session = Session(cloudron="example.com", api_endpoint="my.example.com")
        client = APIClient(session, transport=httpx.MockTransport(lambda request: httpx.Response(200)))

        with pytest.raises(NotLoggedInError, match="Use cloudron login first"):
            await client.get("/api/v1/apps")
        await client.close()

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self):
        """Test requests without any answer raise httpx errors."""
        def handler(request):
            raise httpx.ConnectError("refused")

        async with APIClient(SESSION, transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(httpx.ConnectError):
                await client.get("/api/v1/apps")

    @pytest.mark.asyncio
    async def test_stream(self):
        """Test streamed responses can be read line by line."""
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"a\nb\n"))

        async with APIClient(SESSION, transport=transport) as client:
            async with client.stream("GET", "/api/v1/apps/x/logs") as response:
                lines = [line async for line in response.aiter_lines()]

        assert lines == ["a", "b"]


class TestHelpers:
    """Test response helpers."""

    def test_expect_status_passes(self):
        """Test an expected status returns the response."""
        response = httpx.Response(202)

        assert expect_status(response, (200, 202), "Failed.") is response

    def test_expect_status_raises(self):
        """Test an unexpected status raises with code and text."""
        with pytest.raises(APIError, match="Failed to stop app. 500 - oops") as exc_info:
            expect_status(httpx.Response(500, text="oops"), 202, "Failed to stop app.")

        assert exc_info.value.status_code == 500

    def test_response_json(self):
        """Test only JSON objects are returned."""
        assert response_json(httpx.Response(200, json={"a": 1})) == {"a": 1}
        assert response_json(httpx.Response(200, json=[1, 2])) == {}
        assert response_json(httpx.Response(200, text="not json")) == {}


class TestDetectEndpoint:
    """Test finding the API endpoint of a Cloudron."""

    @pytest.mark.asyncio
    async def test_dashed_endpoint(self):
        """Test my-<domain> is tried first."""
        def handler(request):
            if request.url.host == "my-example.com":
                return httpx.Response(200, json={"version": "0.9.0"})
            return httpx.Response(404)

        session = await detect_api_endpoint("example.com", transport=httpx.MockTransport(handler))

        assert session.cloudron == "example.com"
        assert session.api_endpoint == "my-example.com"

    @pytest.mark.asyncio
    async def test_dotted_endpoint_from_url(self):
        """Test a full URL of the admin domain is accepted."""
        def handler(request):
            if request.url.host == "my.example.com":
                return httpx.Response(200, json={"version": "0.9.0"})
            raise httpx.ConnectError("unknown host")

        session = await detect_api_endpoint("https://my.example.com/", transport=httpx.MockTransport(handler))

        assert session.cloudron == "example.com"
        assert session.api_endpoint == "my.example.com"

    @pytest.mark.asyncio
    async def test_not_found(self):
        """Test a host that is not a Cloudron."""
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(CloudronError, match="Cloudron not found"):
            await detect_api_endpoint("example.org", transport=transport)


class TestLogin:
    """Test exchanging credentials for a token."""

    @pytest.mark.asyncio
    async def test_success(self):
        """Test the token is returned."""
        def handler(request):
            assert json.loads(request.content) == {"username": "admin", "password": "pw"}
            return httpx.Response(200, json={"token": "t0k3n"})

        session = Session(cloudron="example.com", api_endpoint="my.example.com")
        token = await login(session, "admin", "pw", transport=httpx.MockTransport(handler))

        assert token == "t0k3n"

    @pytest.mark.asyncio
    async def test_cli_mode_disabled(self):
        """Test 412 points to the settings page."""
        transport = httpx.MockTransport(lambda request: httpx.Response(412))
        session = Session(cloudron="example.com", api_endpoint="my.example.com")

        with pytest.raises(CLIModeDisabledError, match="https://my.example.com/#/settings"):
            await login(session, "admin", "pw", transport=transport)

    @pytest.mark.asyncio
    async def test_wrong_credentials(self):
        """Test other failures are reported as failed login."""
        transport = httpx.MockTransport(lambda request: httpx.Response(401))
        session = Session(cloudron="example.com", api_endpoint="my.example.com")

        with pytest.raises(APIError, match="Login failed."):
            await login(session, "admin", "wrong", transport=transport)
