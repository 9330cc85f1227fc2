"""Tests for push and pull."""

import asyncio
import io
import json
import sys
import tarfile

import httpx
import pytest
from rich.console import Console

from cloudron.api import AdminRequiredError, Session
from cloudron.core.framing import EOF_FRAME, StreamType, decode_outbound, encode_output_frame
from cloudron.utils.transfer import (
    TarExtractSink,
    TransferError,
    plan_pull,
    plan_push,
    pull,
    push,
    remote_target,
)


SESSION = Session(cloudron="example.com", api_endpoint="my.example.com", token="secret")


class RemoteCommand:
    """Upgraded stream of a remote command that exits once its input ends."""

    def __init__(self, output=b""):
        self._output = [output] if output else []
        self.written = bytearray()

    async def read(self, max_bytes, timeout=None):
        if self._output:
            return self._output.pop(0)
        while not self.written.endswith(EOF_FRAME):
            await asyncio.sleep(0)
        return b""

    async def write(self, data, timeout=None):
        self.written.extend(data)

    async def aclose(self):
        pass


def upgrade_transport(stream, requests):
    def handler(request):
        requests.append(request)
        return httpx.Response(101, extensions={"network_stream": stream})

    return httpx.MockTransport(handler)


def make_archive(files):
    data = io.BytesIO()
    with tarfile.open(fileobj=data, mode="w:gz") as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
    return data.getvalue()


class TestPlanPush:
    """Test the command and input chosen for a push."""

    def test_remote_directory_keeps_local_name(self):
        """Test a trailing slash appends the local file name."""
        assert remote_target("/tmp/data.sql", "/app/data/") == "/app/data/data.sql"
        assert remote_target("/tmp/data.sql", "/app/data/dump.sql") == "/app/data/dump.sql"

    def test_missing_local_file(self, tmp_path):
        """Test a missing local file fails before connecting."""
        with pytest.raises(TransferError, match="does not exist"):
            plan_push(str(tmp_path / "missing"), "/app/data/")

    def test_file(self, tmp_path):
        """Test files are written with cat."""
        local = tmp_path / "my file.txt"
        local.write_bytes(b"content")

        command, _, handle = plan_push(str(local), "/app/data/", Console(file=io.StringIO()))
        handle.close()

        assert command == ["bash", "-c", "cat - > '/app/data/my file.txt'"]

    def test_stdin(self):
        """Test - reads the process stdin."""
        command, source, handle = plan_push("-", "/app/data/in.txt")

        assert command == ["bash", "-c", "cat - > /app/data/in.txt"]
        assert source is sys.stdin.buffer
        assert handle is None

    def test_directory(self, tmp_path):
        """Test directories are sent as a gzipped tarball."""
        (tmp_path / "site").mkdir()
        (tmp_path / "site" / "index.html").write_text("<h1>hi</h1>")

        command, source, handle = plan_push(str(tmp_path / "site"), "/app/data")

        assert command == ["tar", "zxvf", "-", "-C", "/app/data"]
        with tarfile.open(fileobj=source, mode="r:gz") as tar:
            assert "site/index.html" in tar.getnames()
        handle.close()


class TestPlanPull:
    """Test the command and output chosen for a pull."""

    def test_directory(self, tmp_path):
        """Test a trailing slash pulls a tarball."""
        command, sink = plan_pull("/app/data/", str(tmp_path))

        assert command == ["tar", "zcf", "-", "-C", "/app/data/", "."]
        assert isinstance(sink, TarExtractSink)

    def test_into_local_directory(self, tmp_path):
        """Test a local directory receives the remote file name."""
        command, sink = plan_pull("/app/data/config.json", str(tmp_path))
        sink.close()

        assert command == ["cat", "/app/data/config.json"]
        assert (tmp_path / "config.json").exists()

    def test_stdout(self):
        """Test - writes to stdout."""
        _, sink = plan_pull("/app/data/config.json", "-")

        assert sink is sys.stdout.buffer


class TestTarExtractSink:
    """Test unpacking of pulled directories."""

    def test_extracts_on_close(self, tmp_path):
        """Test the archive is extracted into a new directory."""
        target = tmp_path / "out"
        sink = TarExtractSink(str(target))
        archive = make_archive({"./a.txt": b"a", "./sub/b.txt": b"b"})

        sink.write(archive[:10])
        sink.write(archive[10:])
        sink.close()

        assert (target / "a.txt").read_bytes() == b"a"
        assert (target / "sub" / "b.txt").read_bytes() == b"b"
        assert sink.closed is True

    def test_invalid_archive(self, tmp_path):
        """Test garbage is reported as a pull error."""
        sink = TarExtractSink(str(tmp_path / "out"))
        sink.write(b"not a tarball")

        with pytest.raises(TransferError, match="Error pulling"):
            sink.close()


class TestTransfers:
    """Test push and pull over the exec transport."""

    @pytest.mark.asyncio
    async def test_push_file(self, tmp_path):
        """Test the file content is framed and followed by end of input."""
        local = tmp_path / "dump.sql"
        local.write_bytes(b"CREATE TABLE x;")
        stream = RemoteCommand()
        requests = []

        await push(
            SESSION, "app-1", str(local), "/app/data/",
            console=Console(file=io.StringIO()),
            transport=upgrade_transport(stream, requests),
        )

        assert json.loads(requests[0].url.params["cmd"]) == ["bash", "-c", "cat - > /app/data/dump.sql"]
        assert requests[0].url.params["tty"] == "false"
        assert b"".join(decode_outbound(bytes(stream.written))) == b"CREATE TABLE x;"

    @pytest.mark.asyncio
    async def test_pull_file(self, tmp_path):
        """Test remote output is written to the local file."""
        stream = RemoteCommand(encode_output_frame(StreamType.STDOUT, b"remote content"))
        requests = []
        local = tmp_path / "copy.txt"

        await pull(SESSION, "app-1", "/app/data/file.txt", str(local), transport=upgrade_transport(stream, requests))

        assert json.loads(requests[0].url.params["cmd"]) == ["cat", "/app/data/file.txt"]
        assert local.read_bytes() == b"remote content"
        assert bytes(stream.written) == EOF_FRAME

    @pytest.mark.asyncio
    async def test_pull_file_refused(self, tmp_path):
        """Test a refused session leaves no empty local file behind."""
        local = tmp_path / "copy.txt"
        transport = httpx.MockTransport(lambda request: httpx.Response(403))

        with pytest.raises(AdminRequiredError):
            await pull(SESSION, "app-1", "/app/data/file.txt", str(local), transport=transport)

        assert not local.exists()

    @pytest.mark.asyncio
    async def test_pull_directory_refused(self, tmp_path):
        """Test a refused directory pull extracts nothing."""
        target = tmp_path / "out"
        transport = httpx.MockTransport(lambda request: httpx.Response(403))

        with pytest.raises(AdminRequiredError):
            await pull(SESSION, "app-1", "/app/data/", str(target), transport=transport)

        assert not target.exists()
