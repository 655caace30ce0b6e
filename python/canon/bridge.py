# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Bridge the host terminal to a command running in a container.

Two transports reach the remote command:

- :class:`ExecTransport` runs the command with exec inside an already
  running container.  Persistent containers are reached this way, since
  their primary process is the idling setup script.
- :class:`AttachTransport` stays attached to a fresh one-shot container
  whose primary process *is* the interactive command.

:func:`run_interactive` drives either one: it sizes the remote TTY, follows
host resizes, puts the host terminal in raw mode and copies bytes both ways
until the remote side has finished writing.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, BinaryIO, Protocol

from canon import _socket_client as sc
from canon._callbacks import SessionCallbacks
from canon._stream import demux_stream_iter
from canon.errors import CanonError, ContainerNotFound, ContainerNotRunning, SessionCancelled

if TYPE_CHECKING:
    from canon._tty import HostTerminal
    from canon.orchestrator import AcquiredContainer, PrimaryStream
    from canon.types import ExecSpec

_CHUNK_SIZE = 4096
_EXIT_CODE_POLLS = 20
_EXIT_CODE_POLL_INTERVAL = 0.05


class Transport(Protocol):
    """A bidirectional byte stream to one remote command."""

    @property
    def multiplexed(self) -> bool:
        """Whether remote output arrives in 8-byte-header frames (no TTY)."""
        ...

    async def open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Connect and return the stream."""
        ...

    async def start(self) -> None:
        """Start the remote command, if opening did not already."""
        ...

    async def resize(self, rows: int, cols: int) -> None:
        """Resize the remote TTY."""
        ...

    async def exit_code(self) -> int:
        """Exit status of the remote command once its output has ended."""
        ...

    async def close(self) -> None:
        """Release the stream."""
        ...


class ExecTransport:
    """Runs a command with exec inside a running container."""

    def __init__(self, socket_path: str, container_id: str, spec: ExecSpec) -> None:
        self._socket_path = socket_path
        self._container_id = container_id
        self._spec = spec
        self._exec_id: str | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def multiplexed(self) -> bool:
        return not self._spec.tty

    @property
    def exec_id(self) -> str | None:
        """Engine ID of the exec instance once opened."""
        return self._exec_id

    async def open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        self._exec_id = await sc.exec_create(
            self._socket_path,
            self._container_id,
            list(self._spec.command),
            user=self._spec.user,
            working_dir=self._spec.working_dir,
            env=list(self._spec.env),
            tty=self._spec.tty,
            attach_stdin=True,
        )
        # starting an exec attached is a single engine call
        reader, writer = await sc.exec_start_hijack(
            self._socket_path, self._exec_id, tty=self._spec.tty
        )
        self._writer = writer
        return reader, writer

    async def start(self) -> None:
        return

    async def resize(self, rows: int, cols: int) -> None:
        if self._exec_id is None:
            return
        await sc.exec_resize(self._socket_path, self._exec_id, rows, cols)

    async def exit_code(self) -> int:
        if self._exec_id is None:
            return -1
        code = await sc.exec_inspect_exit_code(self._socket_path, self._exec_id)
        # the engine can close the stream a moment before recording the code
        for _ in range(_EXIT_CODE_POLLS):
            if code != -1:
                break
            await asyncio.sleep(_EXIT_CODE_POLL_INTERVAL)
            code = await sc.exec_inspect_exit_code(self._socket_path, self._exec_id)
        return code

    async def close(self) -> None:
        await _close_writer(self._writer)
        self._writer = None


class AttachTransport:
    """Stays on the stream the orchestrator attached to a fresh container.

    The container is already running its primary process, the session
    command, so opening hands over the stream and starting is a no-op.
    """

    def __init__(
        self, socket_path: str, container_id: str, primary: PrimaryStream, *, tty: bool = True
    ) -> None:
        self._socket_path = socket_path
        self._container_id = container_id
        self._primary = primary
        self._tty = tty

    @property
    def multiplexed(self) -> bool:
        return not self._tty

    async def open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return self._primary.reader, self._primary.writer

    async def start(self) -> None:
        return

    async def resize(self, rows: int, cols: int) -> None:
        await sc.resize_container(self._socket_path, self._container_id, rows, cols)

    async def exit_code(self) -> int:
        return await self._primary.exit_status

    async def close(self) -> None:
        await self._primary.close()


def select_transport(socket_path: str, acquired: AcquiredContainer, spec: ExecSpec) -> Transport:
    """Pick how to reach the interactive command in *acquired*.

    A container this invocation just created with the command as its
    primary process is attached to; everything else uses exec.
    """
    if acquired.created and acquired.primary is not None:
        return AttachTransport(
            socket_path, acquired.container_id, acquired.primary, tty=spec.tty
        )
    return ExecTransport(socket_path, acquired.container_id, spec)


async def _close_writer(writer: asyncio.StreamWriter | None) -> None:
    if writer is None:
        return
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()


async def _resize(
    transport: Transport,
    rows: int,
    cols: int,
    callbacks: SessionCallbacks,
    *,
    strict: bool = False,
) -> None:
    """Resize the remote TTY.

    A command that has not started or has already exited cannot be resized;
    that is always ignored.  With ``strict`` other failures propagate.
    """
    try:
        await transport.resize(rows, cols)
    except (ContainerNotRunning, ContainerNotFound) as exc:
        callbacks.debug(f"resize ignored: {exc}")
    except (CanonError, OSError) as exc:
        if strict:
            raise
        callbacks.debug(f"resize failed: {exc}")


async def _copy_stdin(
    stdin: asyncio.StreamReader | None,
    writer: asyncio.StreamWriter,
) -> None:
    """Copy host stdin to the remote side, half-closing it at EOF."""
    if stdin is not None:
        while True:
            data = await stdin.read(_CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    with contextlib.suppress(OSError):
        if writer.can_write_eof():
            writer.write_eof()


async def _copy_remote(
    reader: asyncio.StreamReader,
    stdout: BinaryIO,
    *,
    multiplexed: bool,
) -> None:
    """Copy remote output to host stdout until the remote side closes."""
    if multiplexed:
        async for _stream_type, payload in demux_stream_iter(reader):
            stdout.write(payload)
            stdout.flush()
        return
    while True:
        data = await reader.read(_CHUNK_SIZE)
        if not data:
            return
        stdout.write(data)
        stdout.flush()


async def run_interactive(  # noqa: PLR0913
    transport: Transport,
    *,
    stdin: asyncio.StreamReader | None,
    stdout: BinaryIO,
    terminal: HostTerminal | None = None,
    cancel: asyncio.Event | None = None,
    callbacks: SessionCallbacks | None = None,
) -> int:
    """Run the remote command with the host terminal attached.

    The session ends when the remote output has been fully copied to
    *stdout*.  Host stdin reaching EOF only half-closes the stream; the
    remote side keeps draining until it finishes or *cancel* is set.

    Returns:
        The remote command's exit code.

    Raises:
        SessionCancelled: *cancel* fired while waiting for remote output.

    """
    callbacks = callbacks or SessionCallbacks()
    cancel = cancel or asyncio.Event()
    resize_tasks: set[asyncio.Task[None]] = set()

    def _on_resize(rows: int, cols: int) -> None:
        task = asyncio.ensure_future(_resize(transport, rows, cols, callbacks))
        resize_tasks.add(task)
        task.add_done_callback(resize_tasks.discard)

    reader, writer = await transport.open()
    try:
        size = terminal.size() if terminal is not None else None
        if size is not None:
            await _resize(transport, *size, callbacks, strict=True)

        with contextlib.ExitStack() as stack:
            if terminal is not None:
                stack.enter_context(terminal.watch_resize(_on_resize))
                stack.enter_context(terminal.raw())

            outbound = asyncio.ensure_future(
                _copy_remote(reader, stdout, multiplexed=transport.multiplexed)
            )
            inbound = asyncio.ensure_future(_copy_stdin(stdin, writer))
            try:
                await transport.start()
                done, _ = await asyncio.wait(
                    {outbound, inbound}, return_when=asyncio.FIRST_COMPLETED
                )
                if outbound not in done:
                    inbound.result()
                    cancelled = asyncio.ensure_future(cancel.wait())
                    try:
                        done, _ = await asyncio.wait(
                            {outbound, cancelled}, return_when=asyncio.FIRST_COMPLETED
                        )
                    finally:
                        cancelled.cancel()
                    if outbound not in done:
                        raise SessionCancelled
                outbound.result()
            finally:
                for task in (outbound, inbound, *resize_tasks):
                    task.cancel()
                await asyncio.gather(outbound, inbound, *resize_tasks, return_exceptions=True)

        return await transport.exit_code()
    finally:
        await transport.close()
