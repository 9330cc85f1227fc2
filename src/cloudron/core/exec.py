"""Run commands inside an app container over one upgraded connection.

The exec route answers ``101 Switching Protocols`` and from then on the
connection is a raw duplex byte stream. In TTY mode the bytes are passed
through untouched (the remote merges stdout and stderr). Otherwise stdin is
sent as length-prefixed frames and the output comes back as typed frames,
see ``cloudron.core.framing``.
"""

import asyncio
import json
import logging
import os
import shutil
import stat
import sys
from contextlib import contextmanager
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Sequence, Tuple

import httpcore
import httpx

from ..api import (
    AdminRequiredError,
    CLIModeDisabledError,
    ExecError,
    Session,
    UpgradeError,
)
from ..api.client import developer_mode_notice
from .framing import EOF_FRAME, FrameDecoder, StreamType, encode_frame

logger = logging.getLogger(__name__)

DEFAULT_SHELL = ["/bin/bash"]
CHUNK_SIZE = 64 * 1024
UPGRADE_HEADERS = {"Connection": "Upgrade", "Upgrade": "tcp"}

# Errors raised by the raw network stream once the connection is upgraded
SOCKET_ERRORS = (OSError, httpcore.NetworkError)


def is_tty(stream: Any) -> bool:
    isatty = getattr(stream, "isatty", None)
    if isatty is None:
        return False
    try:
        return bool(isatty())
    except ValueError:  # closed file
        return False


def _fileno(stream: Any) -> Optional[int]:
    try:
        return stream.fileno()
    except (AttributeError, OSError, ValueError):
        return None


def terminal_size(stream: Any) -> Tuple[int, int]:
    """Rows and columns of the terminal behind ``stream``, or a best guess."""
    fd = _fileno(stream)
    if fd is not None and is_tty(stream):
        try:
            size = os.get_terminal_size(fd)
            return size.lines, size.columns
        except OSError:
            pass
    size = shutil.get_terminal_size()
    return size.lines, size.columns


def native_stdout_streams() -> Tuple[Any, ...]:
    return (sys.stdout, getattr(sys.stdout, "buffer", None), sys.__stdout__)


def binary_stream(stream: Any) -> Any:
    """Return the byte-level stream behind a text stream such as sys.stdout."""
    return getattr(stream, "buffer", stream)


async def _read_fd(fd: int) -> AsyncIterator[bytes]:
    """Read a pipe, socket or terminal fd as the event loop reports it readable."""
    loop = asyncio.get_running_loop()
    while True:
        ready = loop.create_future()
        loop.add_reader(fd, lambda: ready.done() or ready.set_result(None))
        try:
            await ready
        finally:
            loop.remove_reader(fd)
        data = os.read(fd, CHUNK_SIZE)
        if not data:
            return
        yield data


async def read_chunks(source: Any) -> AsyncIterator[bytes]:
    """Turn a local input into an async stream of byte chunks.

    Accepts an async iterable of bytes, a file object backed by a pipe,
    socket or terminal (read when readable), or any object with ``read``
    (regular files, BytesIO).
    """
    if hasattr(source, "__aiter__"):
        async for chunk in source:
            if chunk:
                yield chunk
        return

    source = binary_stream(source)
    fd = _fileno(source)
    if fd is not None:
        mode = os.fstat(fd).st_mode
        # epoll rejects devices such as /dev/null, those are read directly
        if stat.S_ISFIFO(mode) or stat.S_ISSOCK(mode) or os.isatty(fd):
            async for chunk in _read_fd(fd):
                yield chunk
            return

    read = getattr(source, "read1", None) or source.read
    while True:
        chunk = read(CHUNK_SIZE)
        if not chunk:
            return
        yield chunk
        await asyncio.sleep(0)


@contextmanager
def raw_mode(stream: Any) -> Iterator[None]:
    """Put a terminal into raw mode for the duration of the block."""
    import termios
    import tty

    fd = stream.fileno()
    saved = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


class ExecSession:
    """One remote command with its stdin, stdout and stderr.

    Also used by push and pull, which supply their own input source or
    output sink instead of the process streams.
    """

    def __init__(
        self,
        session: Session,
        app_id: str,
        command: Sequence[str],
        tty: bool = False,
        stdin: Any = None,
        stdout: Any = None,
        stderr: Any = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.session = session
        self.app_id = app_id
        self.command: List[str] = list(command)
        self.tty = tty
        if not self.command:
            self.command = list(DEFAULT_SHELL)
            self.tty = True

        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout
        self.stderr = stderr if stderr is not None else sys.stderr
        self._transport = transport

    def check_preconditions(self) -> None:
        """Fail before touching the network if TTY mode cannot work."""
        if self.tty and not is_tty(self.stdin):
            raise ExecError("stdin is not tty")

    def query_params(self) -> Dict[str, Any]:
        rows, columns = terminal_size(self.stdout)
        return {
            "rows": rows,
            "columns": columns,
            "access_token": self.session.require_login().token,
            "cmd": json.dumps(self.command),
            "tty": "true" if self.tty else "false",
        }

    @property
    def url(self) -> str:
        return f"{self.session.base_url}/api/v1/apps/{self.app_id}/exec"

    def raise_for_upgrade(self, status_code: int) -> None:
        """Map a non-upgrade answer to the matching error."""
        if status_code == 412:
            raise CLIModeDisabledError(developer_mode_notice(self.session), status_code=412)
        if status_code == 403:
            raise AdminRequiredError("Only admins can use this feature.", status_code=403)
        raise UpgradeError(
            f"Could not upgrade connection to tcp. http status: {status_code}",
            status_code=status_code,
        )

    async def run(self) -> None:
        """Open the exec connection and pump data until the remote closes it.

        Raises:
            ExecError: On precondition, connection, upgrade or socket failure
        """
        self.check_preconditions()

        logger.debug("exec %s on app %s (tty=%s)", self.command, self.app_id, self.tty)

        async with httpx.AsyncClient(verify=False, timeout=None, transport=self._transport) as client:
            request = client.build_request(
                "GET", self.url, params=self.query_params(), headers=UPGRADE_HEADERS
            )
            try:
                response = await client.send(request, stream=True)
            except httpx.TransportError as e:
                raise ExecError(f"Could not connect to {self.session.api_endpoint}: {e}")

            try:
                if response.status_code != 101:
                    self.raise_for_upgrade(response.status_code)

                # Only the network stream is used from here on
                network_stream = response.extensions.get("network_stream")
                if network_stream is None:
                    raise UpgradeError(
                        "Could not upgrade connection to tcp. No stream available.",
                        status_code=response.status_code,
                    )
                await self.pump(network_stream)
            finally:
                await response.aclose()

    async def pump(self, stream: Any) -> None:
        """Copy data both ways over an upgraded stream until the remote closes it."""
        try:
            if self.tty:
                with raw_mode(self.stdin):
                    await self._run_pumps(self._upload_raw(stream), self._download_raw(stream))
            else:
                await self._run_pumps(self._upload_framed(stream), self._download_framed(stream))
                self._close_output()
        except SOCKET_ERRORS as e:
            raise ExecError(f"Connection error: {e}")

    async def _run_pumps(self, upload: Any, download: Any) -> None:
        """Run both directions; finish when the download side sees the remote close."""
        upload_task = asyncio.ensure_future(upload)
        download_task = asyncio.ensure_future(download)
        try:
            pending = {upload_task, download_task}
            while download_task in pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    task.result()
        finally:
            # Local input is abandoned, not flushed, once the remote is gone
            for task in (upload_task, download_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(upload_task, download_task, return_exceptions=True)

    async def _upload_raw(self, stream: Any) -> None:
        # The remote owns closing the connection, so no end marker is sent
        async for chunk in read_chunks(self.stdin):
            await stream.write(chunk)

    async def _download_raw(self, stream: Any) -> None:
        sink = binary_stream(self.stdout)
        while True:
            data = await stream.read(CHUNK_SIZE)
            if not data:
                return
            sink.write(data)
            sink.flush()

    async def _upload_framed(self, stream: Any) -> None:
        async for chunk in read_chunks(self.stdin):
            await stream.write(encode_frame(chunk))
        await stream.write(EOF_FRAME)

    async def _download_framed(self, stream: Any) -> None:
        decoder = FrameDecoder()
        stdout = binary_stream(self.stdout)
        stderr = binary_stream(self.stderr)
        while True:
            data = await stream.read(CHUNK_SIZE)
            if not data:
                if decoder.pending:
                    logger.debug("Remote closed with %d undecoded bytes", decoder.pending)
                return
            for frame in decoder.feed(data):
                if not frame.payload:
                    continue
                sink = stderr if frame.stream is StreamType.STDERR else stdout
                sink.write(frame.payload)
                sink.flush()

    def _close_output(self) -> None:
        if any(self.stdout is native for native in native_stdout_streams() if native is not None):
            return
        self.stdout.close()
