"""Tests for exec sessions over an upgraded connection."""

import asyncio
import contextlib
import io
import json
import os
from unittest.mock import Mock, patch

import httpx
import pytest

from cloudron.api import (
    AdminRequiredError,
    CLIModeDisabledError,
    ExecError,
    NotLoggedInError,
    Session,
    UpgradeError,
)
from cloudron.core.exec import ExecSession, read_chunks
from cloudron.core.framing import EOF_FRAME, StreamType, decode_outbound, encode_output_frame


SESSION = Session(cloudron="example.com", api_endpoint="my.example.com", token="secret")


class Sink(io.BytesIO):
    """Output sink that remembers being closed but keeps its contents."""

    closed_by_session = False

    def close(self):
        self.closed_by_session = True


class FakeNetworkStream:
    """Remote end of an upgraded exec connection."""

    def __init__(self, output=b"", closes_when=lambda written: True, chunk_size=3):
        self._output = [output[i:i + chunk_size] for i in range(0, len(output), chunk_size)]
        self._closes_when = closes_when
        self.written = bytearray()
        self.closed = False

    async def read(self, max_bytes, timeout=None):
        if self._output:
            return self._output.pop(0)
        while not self._closes_when(bytes(self.written)):
            await asyncio.sleep(0)
        return b""

    async def write(self, data, timeout=None):
        self.written.extend(data)

    async def aclose(self):
        self.closed = True


async def endless_input():
    """Local input that never ends, like a terminal nobody types into."""
    await asyncio.Event().wait()
    yield b"never sent"


def make_exec(command=("ls",), tty=False, stdin=b"", transport=None):
    return ExecSession(
        SESSION,
        "app-1",
        list(command),
        tty=tty,
        stdin=io.BytesIO(stdin),
        stdout=Sink(),
        stderr=Sink(),
        transport=transport,
    )


class TestExecSetup:
    """Test command defaults and request parameters."""

    def test_empty_command_opens_shell(self):
        """Test no command means an interactive bash."""
        session = make_exec(command=())

        assert session.command == ["/bin/bash"]
        assert session.tty is True

    def test_query_params(self):
        """Test the upgrade request parameters."""
        session = make_exec(command=("ls", "-l", "/app/data"))
        params = session.query_params()

        assert json.loads(params["cmd"]) == ["ls", "-l", "/app/data"]
        assert params["tty"] == "false"
        assert params["access_token"] == "secret"
        assert params["rows"] > 0
        assert params["columns"] > 0

    def test_url(self):
        """Test the exec route of the app."""
        assert make_exec().url == "https://my.example.com/api/v1/apps/app-1/exec"

    def test_requires_login(self):
        """Test a session without token cannot exec."""
        session = ExecSession(Session(api_endpoint="my.example.com"), "app-1", ["ls"], stdin=io.BytesIO())

        with pytest.raises(NotLoggedInError):
            session.query_params()


class TestUpgrade:
    """Test the upgrade handshake."""

    @pytest.mark.asyncio
    async def test_tty_requires_terminal_before_connecting(self):
        """Test TTY mode with a non-terminal stdin fails without network access."""
        handler = Mock(return_value=httpx.Response(101))
        session = make_exec(tty=True, transport=httpx.MockTransport(handler))

        with pytest.raises(ExecError, match="stdin is not tty"):
            await session.run()

        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_upgrade_headers(self):
        """Test the request asks for a tcp upgrade."""
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["params"] = request.url.params
            return httpx.Response(500)

        with pytest.raises(UpgradeError):
            await make_exec(transport=httpx.MockTransport(handler)).run()

        assert seen["headers"]["connection"] == "Upgrade"
        assert seen["headers"]["upgrade"] == "tcp"
        assert seen["params"]["tty"] == "false"

    @pytest.mark.asyncio
    async def test_cli_mode_disabled(self):
        """Test 412 tells the user to enable CLI mode."""
        transport = httpx.MockTransport(lambda request: httpx.Response(412))

        with pytest.raises(CLIModeDisabledError) as exc_info:
            await make_exec(transport=transport).run()

        assert exc_info.value.message == "CLI mode is disabled. Enable it at https://my.example.com/#/settings."
        assert exc_info.value.status_code == 412

    @pytest.mark.asyncio
    async def test_admin_required(self):
        """Test 403 is reported as missing admin rights."""
        transport = httpx.MockTransport(lambda request: httpx.Response(403))

        with pytest.raises(AdminRequiredError, match="Only admins can use this feature."):
            await make_exec(transport=transport).run()

    @pytest.mark.asyncio
    async def test_other_status(self):
        """Test any other status is a generic upgrade failure."""
        transport = httpx.MockTransport(lambda request: httpx.Response(502))

        with pytest.raises(UpgradeError, match="Could not upgrade connection to tcp. http status: 502"):
            await make_exec(transport=transport).run()

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        """Test transport errors become exec errors."""
        def handler(request):
            raise httpx.ConnectError("no route to host")

        with pytest.raises(ExecError, match="no route to host"):
            await make_exec(transport=httpx.MockTransport(handler)).run()

    @pytest.mark.asyncio
    async def test_upgraded_stream_is_pumped(self):
        """Test a 101 answer hands the network stream to the pumps."""
        stream = FakeNetworkStream(
            encode_output_frame(StreamType.STDOUT, b"done\n"),
            closes_when=lambda written: written.endswith(EOF_FRAME),
        )
        transport = httpx.MockTransport(
            lambda request: httpx.Response(101, extensions={"network_stream": stream})
        )
        session = make_exec(stdin=b"input", transport=transport)

        await session.run()

        assert session.stdout.getvalue() == b"done\n"
        assert decode_outbound(bytes(stream.written)) == [b"input"]


class TestFramedPump:
    """Test non-TTY data transfer."""

    @pytest.mark.asyncio
    async def test_routes_output_and_frames_input(self):
        """Test stdout and stderr frames go to their sinks and stdin is framed."""
        output = (
            encode_output_frame(StreamType.STDOUT, b"out1 ")
            + encode_output_frame(StreamType.STDERR, b"err1")
            + encode_output_frame(StreamType.STDOUT, b"")
            + encode_output_frame(StreamType.STDOUT, b"out2")
        )
        stream = FakeNetworkStream(output, closes_when=lambda written: written.endswith(EOF_FRAME))
        session = make_exec(stdin=b"hello world")

        await session.pump(stream)

        assert session.stdout.getvalue() == b"out1 out2"
        assert session.stderr.getvalue() == b"err1"
        assert bytes(stream.written).endswith(EOF_FRAME)
        assert decode_outbound(bytes(stream.written)) == [b"hello world"]

    @pytest.mark.asyncio
    async def test_empty_stdin_sends_only_end_of_input(self):
        """Test an empty input still signals its end."""
        stream = FakeNetworkStream(closes_when=lambda written: written.endswith(EOF_FRAME))
        session = make_exec(stdin=b"")

        await session.pump(stream)

        assert bytes(stream.written) == EOF_FRAME

    @pytest.mark.asyncio
    async def test_closes_non_native_output(self):
        """Test a custom output sink is closed when the remote is done."""
        stream = FakeNetworkStream(closes_when=lambda written: written.endswith(EOF_FRAME))
        session = make_exec()

        await session.pump(stream)

        assert session.stdout.closed_by_session is True

    @pytest.mark.asyncio
    async def test_remote_closes_while_input_open(self):
        """Test the session ends when the remote exits before local input does."""
        stream = FakeNetworkStream(encode_output_frame(StreamType.STDOUT, b"bye"))
        session = make_exec()
        session.stdin = endless_input()

        await asyncio.wait_for(session.pump(stream), timeout=5)

        assert session.stdout.getvalue() == b"bye"
        assert bytes(stream.written) == b""
        assert session.stdout.closed_by_session is True

    @pytest.mark.asyncio
    async def test_socket_error(self):
        """Test errors on the raw stream become exec errors."""
        stream = FakeNetworkStream()
        stream.read = Mock(side_effect=ConnectionResetError("reset by peer"))
        session = make_exec()

        with pytest.raises(ExecError, match="Connection error: reset by peer"):
            await session.pump(stream)


class TestRawPump:
    """Test TTY data transfer."""

    @pytest.mark.asyncio
    async def test_bytes_pass_through_unframed(self):
        """Test TTY mode copies bytes as they are, with no end marker."""
        stream = FakeNetworkStream(b"\x1b[1mbold\x1b[0m", closes_when=lambda written: written == b"ls\n")
        session = make_exec(tty=True, stdin=b"ls\n")

        with patch("cloudron.core.exec.raw_mode", return_value=contextlib.nullcontext()):
            await session.pump(stream)

        assert bytes(stream.written) == b"ls\n"
        assert session.stdout.getvalue() == b"\x1b[1mbold\x1b[0m"
        assert session.stdout.closed_by_session is False

    @pytest.mark.asyncio
    async def test_remote_closes_while_input_open(self):
        """Test TTY sessions end when the remote shell exits."""
        stream = FakeNetworkStream(b"logout\r\n")
        session = make_exec(tty=True)
        session.stdin = endless_input()

        with patch("cloudron.core.exec.raw_mode", return_value=contextlib.nullcontext()):
            await asyncio.wait_for(session.pump(stream), timeout=5)

        assert session.stdout.getvalue() == b"logout\r\n"
        assert bytes(stream.written) == b""


class TestReadChunks:
    """Test local input sources."""

    @pytest.mark.asyncio
    async def test_file_like(self):
        """Test objects with read are read in chunks."""
        chunks = [chunk async for chunk in read_chunks(io.BytesIO(b"abc"))]

        assert b"".join(chunks) == b"abc"

    @pytest.mark.asyncio
    async def test_async_iterable(self):
        """Test async iterables are passed through without empty chunks."""
        async def source():
            yield b"a"
            yield b""
            yield b"b"

        assert [chunk async for chunk in read_chunks(source())] == [b"a", b"b"]

    @pytest.mark.asyncio
    async def test_pipe(self):
        """Test pipes are read when the event loop reports them readable."""
        read_fd, write_fd = os.pipe()
        os.write(write_fd, b"piped data")
        os.close(write_fd)

        with os.fdopen(read_fd, "rb") as pipe:
            chunks = [chunk async for chunk in read_chunks(pipe)]

        assert b"".join(chunks) == b"piped data"
