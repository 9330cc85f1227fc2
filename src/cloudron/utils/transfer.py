"""File transfer in and out of app containers.

Both directions run a helper command through a non-TTY exec session:
``cat`` for single files and ``tar`` for directories.
"""

import io
import os
import posixpath
import shlex
import sys
import tarfile
import tempfile
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Tuple

import httpx
from rich.console import Console
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TimeRemainingColumn

from ..api import Session
from ..core.exec import CHUNK_SIZE, ExecSession

# Archives up to this size stay in memory
SPOOL_SIZE = 16 * 1024 * 1024


class TransferError(Exception):
    """Raised when a push or pull cannot be set up or completed."""
    pass


def remote_target(local: str, remote: str) -> str:
    """A remote path ending in "/" is a directory; the local name is kept."""
    if remote.endswith("/"):
        return posixpath.join(remote, os.path.basename(local.rstrip("/")))
    return remote


def archive_directory(local: str) -> Any:
    """tar.gz a local directory into a rewound temporary file."""
    archive = tempfile.SpooledTemporaryFile(max_size=SPOOL_SIZE)
    path = Path(local).resolve()
    with tarfile.open(fileobj=archive, mode="w:gz") as tar:
        tar.add(str(path), arcname=path.name)
    archive.seek(0)
    return archive


async def _with_progress(stream: Any, size: int, label: str, console: Console) -> AsyncIterator[bytes]:
    columns = (
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TimeRemainingColumn(),
    )
    with Progress(*columns, console=console, transient=False) as progress:
        task = progress.add_task(label, total=size)
        while True:
            chunk = stream.read(CHUNK_SIZE)
            if not chunk:
                return
            progress.update(task, advance=len(chunk))
            yield chunk


class TarExtractSink:
    """Writable sink that unpacks a tar.gz stream into a directory on close."""

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)
        self._buffer = tempfile.SpooledTemporaryFile(max_size=SPOOL_SIZE)
        self.closed = False

    def write(self, data: bytes) -> int:
        return self._buffer.write(data)

    def flush(self) -> None:
        self._buffer.flush()

    def abort(self) -> None:
        """Drop the received data without extracting it."""
        self.closed = True
        self._buffer.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._buffer.seek(0)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with tarfile.open(fileobj=self._buffer, mode="r:gz") as tar:
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(str(self.directory), filter="data")
                else:
                    tar.extractall(str(self.directory))
        except (tarfile.TarError, OSError) as e:
            raise TransferError(f"Error pulling: {e}")
        finally:
            self._buffer.close()


def plan_push(local: str, remote: str, console: Optional[Console] = None) -> Tuple[List[str], Any, Optional[Any]]:
    """Command, input source and file to close afterwards for a push.

    Raises:
        TransferError: If the local path does not exist
    """
    if local == "-":
        return ["bash", "-c", f"cat - > {shlex.quote(remote)}"], sys.stdin.buffer, None

    if os.path.isdir(local):
        archive = archive_directory(local)
        return ["tar", "zxvf", "-", "-C", remote], archive, archive

    if not os.path.exists(local):
        raise TransferError(f"local file {local} does not exist")

    handle = open(local, "rb")
    size = os.fstat(handle.fileno()).st_size
    source = _with_progress(handle, size, "Uploading", console or Console(stderr=True))
    target = remote_target(local, remote)
    return ["bash", "-c", f"cat - > {shlex.quote(target)}"], source, handle


def plan_pull(remote: str, local: str) -> Tuple[List[str], Any]:
    """Command and output sink for a pull."""
    if remote.endswith("/"):
        return ["tar", "zcf", "-", "-C", remote, "."], TarExtractSink(local)

    if local == "-":
        return ["cat", remote], sys.stdout.buffer

    if os.path.isdir(local):
        local = os.path.join(local, posixpath.basename(remote))
    try:
        return ["cat", remote], open(local, "wb")
    except OSError as e:
        raise TransferError(f"Error pulling: {e}")


async def push(
    session: Session,
    app_id: str,
    local: str,
    remote: str,
    console: Optional[Console] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Copy a local file, directory or stdin ("-") into the app container."""
    command, source, handle = plan_push(local, remote, console)
    try:
        await ExecSession(session, app_id, command, tty=False, stdin=source, transport=transport).run()
    finally:
        if handle is not None:
            handle.close()


async def pull(
    session: Session,
    app_id: str,
    remote: str,
    local: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Copy a remote file, or a directory when ``remote`` ends in "/", out of the container."""
    command, sink = plan_pull(remote, local)
    # nothing to send, only the end-of-input frame
    stdin = io.BytesIO()
    try:
        await ExecSession(session, app_id, command, tty=False, stdin=stdin, stdout=sink, transport=transport).run()
    except BaseException:
        _discard(sink)
        raise


def _discard(sink: Any) -> None:
    if isinstance(sink, TarExtractSink):
        sink.abort()
    elif sink is not sys.stdout.buffer:
        sink.close()
        # truncated on open, no earlier content to keep
        Path(sink.name).unlink(missing_ok=True)
