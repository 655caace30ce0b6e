# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Callback registry for session progress events."""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable


class SessionCallbacks:
    """Registry for output/status/warning/debug callbacks.

    Core modules report through this instead of printing.  Errors in
    callbacks are suppressed so a broken sink cannot abort a session.
    """

    def __init__(self) -> None:
        self._output_cbs: list[Callable[[str], object]] = []
        self._status_cbs: list[Callable[[str], object]] = []
        self._warning_cbs: list[Callable[[str], object]] = []
        self._debug_cbs: list[Callable[[str], object]] = []

    def on_output(self, fn: Callable[[str], object]) -> None:
        """Register a callback for setup-script output lines: fn(line)."""
        self._output_cbs.append(fn)

    def on_status(self, fn: Callable[[str], object]) -> None:
        """Register a callback for progress messages: fn(message)."""
        self._status_cbs.append(fn)

    def on_warning(self, fn: Callable[[str], object]) -> None:
        """Register a callback for warnings: fn(message)."""
        self._warning_cbs.append(fn)

    def on_debug(self, fn: Callable[[str], object]) -> None:
        """Register a callback for diagnostics such as ignored races: fn(message)."""
        self._debug_cbs.append(fn)

    def output(self, line: str) -> None:
        """Fire all output callbacks, suppressing errors."""
        _dispatch(self._output_cbs, line)

    def status(self, message: str) -> None:
        """Fire all status callbacks, suppressing errors."""
        _dispatch(self._status_cbs, message)

    def warning(self, message: str) -> None:
        """Fire all warning callbacks, suppressing errors."""
        _dispatch(self._warning_cbs, message)

    def debug(self, message: str) -> None:
        """Fire all debug callbacks, suppressing errors."""
        _dispatch(self._debug_cbs, message)


def _dispatch(callbacks: list[Callable[[str], object]], message: str) -> None:
    for fn in callbacks:
        with contextlib.suppress(Exception):
            fn(message)
