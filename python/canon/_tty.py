# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Host terminal handling: size, raw mode, and resize notifications."""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import stat
import termios
import tty
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterator

_READ_SIZE = 4096


class HostTerminal:
    """The local terminal a session is bridged to.

    All operations are no-ops when *fd* is not a TTY, so the same session
    code runs with redirected stdin/stdout.
    """

    def __init__(self, fd: int) -> None:
        self._fd = fd

    @property
    def fd(self) -> int:
        """File descriptor of the terminal."""
        return self._fd

    def isatty(self) -> bool:
        """Whether the descriptor refers to a terminal."""
        return os.isatty(self._fd)

    def size(self) -> tuple[int, int] | None:
        """Current ``(rows, cols)``, or ``None`` when unavailable."""
        try:
            size = os.get_terminal_size(self._fd)
        except OSError:
            return None
        return size.lines, size.columns

    @contextlib.contextmanager
    def raw(self) -> Iterator[None]:
        """Put the terminal in raw mode, restoring the previous mode on exit."""
        if not self.isatty():
            yield
            return
        saved = termios.tcgetattr(self._fd)
        try:
            tty.setraw(self._fd)
            yield
        finally:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, saved)

    @contextlib.contextmanager
    def watch_resize(self, callback: Callable[[int, int], object]) -> Iterator[None]:
        """Call ``callback(rows, cols)`` on every ``SIGWINCH`` until exit.

        Must be entered from within a running event loop.
        """
        if not self.isatty():
            yield
            return
        loop = asyncio.get_running_loop()

        def _on_winch() -> None:
            size = self.size()
            if size is not None:
                callback(*size)

        loop.add_signal_handler(signal.SIGWINCH, _on_winch)
        try:
            yield
        finally:
            loop.remove_signal_handler(signal.SIGWINCH)


@contextlib.asynccontextmanager
async def host_stdin(fd: int) -> AsyncIterator[asyncio.StreamReader | None]:
    """Expose host stdin as an ``asyncio.StreamReader``.

    A regular file is read up front.  Pipes and terminals are watched for
    readability and read with plain ``os.read``; the descriptor stays in
    blocking mode, since a terminal's stdin usually shares its open file
    description with stdout.  Yields ``None`` when stdin is closed.
    """
    try:
        mode = os.fstat(fd).st_mode
    except OSError:
        yield None
        return

    reader = asyncio.StreamReader()
    if stat.S_ISREG(mode):
        with os.fdopen(os.dup(fd), "rb") as f:
            reader.feed_data(f.read())
        reader.feed_eof()
        yield reader
        return

    loop = asyncio.get_running_loop()

    def _on_readable() -> None:
        try:
            data = os.read(fd, _READ_SIZE)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            loop.remove_reader(fd)
            reader.set_exception(exc)
            return
        if data:
            reader.feed_data(data)
        else:
            loop.remove_reader(fd)
            reader.feed_eof()

    try:
        loop.add_reader(fd, _on_readable)
    except OSError:
        # not pollable (e.g. /dev/null): behave like an empty stdin
        reader.feed_eof()
        yield reader
        return
    try:
        yield reader
    finally:
        loop.remove_reader(fd)
