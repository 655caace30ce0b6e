# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Run one ``shell`` or ``run`` invocation end to end."""

from __future__ import annotations

import asyncio
import contextlib
import datetime
import os
import signal
import sys
import time
from typing import TYPE_CHECKING, BinaryIO

from canon._callbacks import SessionCallbacks
from canon._logger import HistoryLogger
from canon._tty import HostTerminal, host_stdin
from canon.bridge import run_interactive, select_transport
from canon.errors import CanonError
from canon.orchestrator import acquire_container, release_container, working_dir
from canon.registry import check_image_drift
from canon.types import ExecSpec

if TYPE_CHECKING:
    from collections.abc import Iterator

    from canon.orchestrator import ImagePuller
    from canon.profiles import Profile

MACOS_SSH_SOCKET = "/run/host-services/ssh-auth.sock"
DEFAULT_SHELL = ("bash", "-l")


def ssh_socket_for(profile: Profile) -> str | None:
    """Host SSH agent socket to forward, or ``None``.

    Docker Desktop on macOS exposes the agent at a fixed path inside its VM;
    elsewhere ``SSH_AUTH_SOCK`` is used.
    """
    if not profile.ssh:
        return None
    if sys.platform == "darwin":
        return MACOS_SSH_SOCKET
    return os.environ.get("SSH_AUTH_SOCK") or None


def build_exec_spec(
    profile: Profile,
    command: list[str],
    workdir: str,
    ssh_socket: str | None,
) -> ExecSpec:
    """Describe how the interactive command runs in the container."""
    env = (f"SSH_AUTH_SOCK={ssh_socket}",) if ssh_socket else ()
    return ExecSpec(
        command=tuple(command),
        user=f"{profile.user}:{profile.group}",
        working_dir=workdir,
        env=env,
        tty=True,
    )


@contextlib.contextmanager
def _cancel_on_signals(cancel: asyncio.Event) -> Iterator[None]:
    """Set *cancel* on SIGTERM/SIGHUP while the block runs."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGTERM, signal.SIGHUP):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except (RuntimeError, ValueError):
            continue
        installed.append(sig)
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def run_session(  # noqa: PLR0913
    profile: Profile,
    command: list[str] | None,
    *,
    socket_path: str,
    provider: ImagePuller,
    cwd: str | None = None,
    callbacks: SessionCallbacks | None = None,
    history: HistoryLogger | None = None,
    stdin_fd: int | None = None,
    stdout: BinaryIO | None = None,
    kind: str = "run",
) -> int:
    """Acquire a container, run *command* in it interactively, release it.

    Args:
        profile: Resolved profile.
        command: Command to run; ``None`` runs a login shell.
        socket_path: Engine socket.
        provider: Pulls images missing from the engine.
        cwd: Host directory to start in (default: the current directory).
        callbacks: Progress sinks.
        history: Session history log.
        stdin_fd: Host stdin descriptor (default: ``sys.stdin``).
        stdout: Host stdout byte stream (default: ``sys.stdout.buffer``).
        kind: ``shell`` or ``run``, recorded in the history.

    Returns:
        The remote command's exit code.

    Raises:
        PathOutsideProfile: *cwd* is outside the profile path; raised before
            any engine call.

    """
    callbacks = callbacks or SessionCallbacks()
    history = history or HistoryLogger(enabled=False)
    argv = list(command) if command else list(DEFAULT_SHELL)
    workdir = working_dir(profile, cwd or os.getcwd())
    ssh_socket = ssh_socket_for(profile)
    stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
    stdout = stdout or sys.stdout.buffer

    started_at = datetime.datetime.now(tz=datetime.timezone.utc)
    t0 = time.monotonic()
    container = ""
    exit_code: int | None = None
    error: str | None = None
    spec = build_exec_spec(profile, argv, workdir, ssh_socket)
    try:
        acquired = await acquire_container(
            socket_path,
            profile,
            ssh_socket,
            provider=provider,
            callbacks=callbacks,
            command=spec,
        )
        container = acquired.name
        try:
            if not acquired.created:
                with contextlib.suppress(CanonError):
                    if await check_image_drift(socket_path, acquired.container_id):
                        callbacks.warning(
                            f"container {acquired.name} is running an older image; "
                            "run 'canon terminate' to pick up the update"
                        )

            transport = select_transport(socket_path, acquired, spec)
            cancel = asyncio.Event()
            terminal = HostTerminal(stdin_fd)
            with _cancel_on_signals(cancel):
                async with host_stdin(stdin_fd) as stdin:
                    exit_code = await run_interactive(
                        transport,
                        stdin=stdin,
                        stdout=stdout,
                        terminal=terminal,
                        cancel=cancel,
                        callbacks=callbacks,
                    )
        except BaseException:
            if acquired.primary is not None:
                await acquired.primary.close()
            with contextlib.suppress(CanonError, OSError):
                await release_container(
                    socket_path,
                    acquired.container_id,
                    persistent=acquired.persistent,
                    callbacks=callbacks,
                )
            raise
        await release_container(
            socket_path, acquired.container_id, persistent=acquired.persistent, callbacks=callbacks
        )
        return exit_code
    except Exception as exc:
        error = str(exc)
        raise
    finally:
        history.log_session(
            kind=kind,
            profile=profile.key,
            container=container,
            command=argv,
            exit_code=exit_code,
            started_at=started_at,
            duration_s=time.monotonic() - t0,
            error=error,
        )
