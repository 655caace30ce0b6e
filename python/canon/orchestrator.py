# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Container lifecycle for canon sessions.

:func:`acquire_container` reuses or creates the container for a profile and
only returns once the setup script inside it has printed ``CANON_READY``.
:func:`release_container` tears a one-shot container down again.

Every container runs the setup script (``_scripts/canon_setup.sh``) as its
primary process.  The script remaps the profile user onto the host UID/GID
and announces readiness.  In a persistent container it then idles and
sessions run their command with exec.  A one-shot container is given the
session command up front: the script replaces itself with it after the
readiness line, and the session stays on the stream that was attached for
the readiness scan (see :mod:`canon.bridge`).
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import os
import pathlib
import posixpath
import secrets
import sys
from typing import TYPE_CHECKING, Any, Protocol

from canon import _socket_client as sc
from canon._callbacks import SessionCallbacks
from canon._labels import build_labels, parse_labels
from canon._stream import demux_stream_iter, iter_lines, iter_tty_lines
from canon.errors import (
    CanonError,
    ConfigError,
    ContainerNameConflict,
    ContainerNotFound,
    ContainerNotRunning,
    ImageUnavailable,
    MalformedLabels,
    PathOutsideProfile,
    ProfileDrift,
    ReadinessError,
)
from canon.registry import STOP_TIMEOUT, container_name, find_persistent
from canon.types import Mount

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from canon.profiles import Profile
    from canon.types import ExecSpec

CANON_MOUNT_POINT = "/host"
READY_MARKER = "CANON_READY"
SETUP_SCRIPT = pathlib.Path(__file__).parent / "_scripts" / "canon_setup.sh"


class ImagePuller(Protocol):
    """Anything that can fetch an image for a platform."""

    async def pull(self, image: str, platform: str) -> None: ...


@dataclasses.dataclass
class PrimaryStream:
    """Attached stream of a container whose primary process is the session command.

    ``exit_status`` resolves once the engine has removed the container.
    """

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    exit_status: asyncio.Future[int]

    async def close(self) -> None:
        """Close the stream and stop waiting for the exit status."""
        self.writer.close()
        with contextlib.suppress(OSError):
            await self.writer.wait_closed()
        if not self.exit_status.done():
            self.exit_status.cancel()
            with contextlib.suppress(asyncio.CancelledError, CanonError):
                await self.exit_status


@dataclasses.dataclass(frozen=True)
class AcquiredContainer:
    """A ready container handed to the session.

    Attributes:
        container_id: Engine ID.
        name: Container name.
        created: This invocation created the container.
        restarted: An existing stopped container was started again.
        persistent: The container outlives the session.
        primary: Set when the primary process is the session command itself
            rather than the idling setup script.

    """

    container_id: str
    name: str
    created: bool
    persistent: bool
    restarted: bool = False
    primary: PrimaryStream | None = dataclasses.field(default=None, compare=False, repr=False)

    @property
    def interactive_primary(self) -> bool:
        """Whether the session attaches to the primary process."""
        return self.primary is not None


def working_dir(profile: Profile, cwd: str) -> str:
    """Map a host directory to its location under ``/host``.

    Raises:
        PathOutsideProfile: *cwd* is neither the profile path nor below it.

    """
    root = pathlib.PurePosixPath(posixpath.normpath(profile.path))
    here = pathlib.PurePosixPath(posixpath.normpath(cwd))
    try:
        rel = here.relative_to(root)
    except ValueError:
        raise PathOutsideProfile(str(here), str(root)) from None
    if str(rel) == ".":
        return CANON_MOUNT_POINT
    return str(pathlib.PurePosixPath(CANON_MOUNT_POINT) / rel)


def generate_name(profile: Profile) -> str:
    """Container name: ``canon-<profile>`` or ``canon-<profile>-<8 hex>`` for one-shot."""
    if profile.persistent:
        return f"canon-{profile.name}"
    return f"canon-{profile.name}-{secrets.token_hex(4)}"


def build_mounts(
    profile: Profile,
    ssh_socket: str | None,
    *,
    home: pathlib.Path | None = None,
    callbacks: SessionCallbacks | None = None,
) -> tuple[list[Mount], list[str]]:
    """Build the bind mounts and environment for a new container.

    Returns:
        ``(mounts, env)``; env holds ``CANON_SSH=true`` when ``~/.ssh`` is mounted.

    Raises:
        ConfigError: The profile path is ``/`` on macOS.

    """
    home = home or pathlib.Path.home()
    mounts: list[Mount] = []
    env: list[str] = []

    if profile.ssh:
        if ssh_socket:
            mounts.append(Mount(ssh_socket, ssh_socket))
        ssh_dir = home / ".ssh"
        if ssh_dir.exists():
            mounts.append(Mount(str(ssh_dir), f"/home/{profile.user}/.ssh", read_only=True))
            env.append("CANON_SSH=true")

    if profile.netrc:
        netrc = home / ".netrc"
        if netrc.exists():
            mounts.append(Mount(str(netrc), f"/home/{profile.user}/.netrc", read_only=True))

    if profile.path == "/":
        if sys.platform == "darwin":
            msg = (
                "No profile found that contains the current directory, "
                "and the root filesystem (/) cannot be mounted on macOS"
            )
            raise ConfigError(msg)
        if callbacks is not None:
            callbacks.warning(
                f"profile path is root (/) so the entire host filesystem is mounted at "
                f"{CANON_MOUNT_POINT}"
            )

    mounts.append(Mount(profile.path, CANON_MOUNT_POINT))
    return mounts, env


def render_setup_script(profile: Profile, uid: int | None = None, gid: int | None = None) -> str:
    """Fill in the setup script's user/group tokens."""
    script = SETUP_SCRIPT.read_text()
    replacements = {
        "__CANON_UID__": str(os.getuid() if uid is None else uid),
        "__CANON_GID__": str(os.getgid() if gid is None else gid),
        "__CANON_USER__": profile.user,
        "__CANON_GROUP__": profile.group,
    }
    for token, value in replacements.items():
        script = script.replace(token, value)
    return script


async def acquire_container(
    socket_path: str,
    profile: Profile,
    ssh_socket: str | None,
    *,
    provider: ImagePuller,
    callbacks: SessionCallbacks | None = None,
    command: ExecSpec | None = None,
) -> AcquiredContainer:
    """Return a ready container for *profile*, creating one if needed.

    Persistent profiles reuse their existing container when its stored
    settings equal the current ones; everything else gets a new container.

    When *command* is given and the profile is one-shot, the new container
    runs it as its primary process right after the readiness line, and the
    returned handle carries the attached stream in ``primary``.

    Raises:
        AmbiguousContainers: Several persistent containers match the profile.
        ProfileDrift: The persistent container was created with other settings.
        ReadinessError: The setup script never signalled readiness.
        ConfigError: The persistent container name is held by a container of
            another architecture.

    """
    callbacks = callbacks or SessionCallbacks()
    if profile.persistent:
        existing = await find_persistent(socket_path, profile)
        if existing is not None:
            return await _reuse(socket_path, profile, existing, callbacks)
        command = None
    return await _create(socket_path, profile, ssh_socket, provider, callbacks, command)


async def _reuse(
    socket_path: str,
    profile: Profile,
    container: dict[str, Any],
    callbacks: SessionCallbacks,
) -> AcquiredContainer:
    cid = str(container["Id"])
    name = container_name(container)
    try:
        labels = parse_labels(cid, container.get("Labels"))
    except MalformedLabels as exc:
        raise ProfileDrift(profile.name, "are unreadable") from exc
    if labels.profile_data is None:
        raise ProfileDrift(profile.name, "have no stored profile data")
    if labels.profile_data != profile.snapshot():
        raise ProfileDrift(profile.name)

    if container.get("State") == "running":
        callbacks.debug(f"Reusing running container: {name}")
        return AcquiredContainer(cid, name, created=False, persistent=True)

    callbacks.status(f"Restarting persistent container: {name}")
    await _start_and_wait_ready(socket_path, cid, callbacks)
    return AcquiredContainer(cid, name, created=False, persistent=True, restarted=True)


async def _create(
    socket_path: str,
    profile: Profile,
    ssh_socket: str | None,
    provider: ImagePuller,
    callbacks: SessionCallbacks,
    command: ExecSpec | None = None,
) -> AcquiredContainer:
    image = profile.resolved_image
    if not image:
        msg = f"Profile {profile.name!r} has no image for arch {profile.arch}"
        raise ConfigError(msg)

    mounts, env = build_mounts(profile, ssh_socket, callbacks=callbacks)
    name = generate_name(profile)
    create_kwargs: dict[str, Any] = {
        "name": name,
        "platform": profile.platform,
        "command": ["bash", "-c", render_setup_script(profile)],
        "entrypoint": [],
        "env": env,
        "labels": build_labels(profile),
        "host_config": {
            "AutoRemove": not profile.persistent,
            "Mounts": [m.to_api() for m in mounts],
        },
    }
    if command is not None:
        create_kwargs["command"] += ["canon-setup", *command.command]
        create_kwargs["env"] = [*env, *command.env]
        create_kwargs["working_dir"] = command.working_dir
        create_kwargs["tty"] = command.tty
        create_kwargs["open_stdin"] = True

    try:
        cid, warnings = await _create_pulling(
            socket_path, image, profile, provider, callbacks, create_kwargs
        )
    except ContainerNameConflict as exc:
        if not profile.persistent:
            raise
        msg = (
            f"Container name {name!r} is already taken, most likely by the persistent "
            f"container of profile {profile.name!r} for another architecture; "
            f"run 'canon --arch <arch> terminate' for that architecture and retry"
        )
        raise ConfigError(msg) from exc

    for warning in warnings:
        callbacks.warning(f"Warning during container creation: {warning}")
    callbacks.status(f"Started new container: {name}")

    primary: PrimaryStream | None = None
    try:
        if command is not None:
            primary = await _start_primary(socket_path, cid, callbacks, tty=command.tty)
        else:
            await _start_and_wait_ready(socket_path, cid, callbacks)
    except BaseException:
        with contextlib.suppress(CanonError, OSError):
            await sc.remove_container(socket_path, cid, force=True)
        raise
    return AcquiredContainer(
        cid, name, created=True, persistent=profile.persistent, primary=primary
    )


async def _create_pulling(  # noqa: PLR0913
    socket_path: str,
    image: str,
    profile: Profile,
    provider: ImagePuller,
    callbacks: SessionCallbacks,
    create_kwargs: dict[str, Any],
) -> tuple[str, list[str]]:
    """Create the container, pulling the image and retrying once if it is unavailable."""
    try:
        return await sc.create_container(socket_path, image, **create_kwargs)
    except ImageUnavailable as exc:
        callbacks.status(f"{exc}; pulling {image} for {profile.platform}")
        await provider.pull(image, profile.platform)
        return await sc.create_container(socket_path, image, **create_kwargs)


async def _start_and_wait_ready(
    socket_path: str,
    container_id: str,
    callbacks: SessionCallbacks,
) -> None:
    """Attach, start, and echo setup output until the readiness line.

    The attach happens before the start so no output is missed.  Nothing
    after the readiness line is read.
    """
    reader, writer = await sc.attach_container(socket_path, container_id)
    try:
        await sc.start_container(socket_path, container_id)
        if not await _scan_ready(iter_lines(demux_stream_iter(reader)), callbacks):
            raise ReadinessError(container_id)
    finally:
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()


async def _start_primary(
    socket_path: str,
    container_id: str,
    callbacks: SessionCallbacks,
    *,
    tty: bool,
) -> PrimaryStream:
    """Attach with stdin, start, and echo setup output until the readiness line.

    The stream stays open for the session; what the command writes after
    the readiness line is left unread.  The exit-status wait is registered
    before the start so a fast command cannot be removed unobserved.
    """
    exit_status = asyncio.ensure_future(
        sc.wait_container(socket_path, container_id, condition="removed")
    )
    try:
        reader, writer = await sc.attach_container(socket_path, container_id, stdin=True)
    except BaseException:
        exit_status.cancel()
        raise
    primary = PrimaryStream(reader, writer, exit_status)
    try:
        await sc.start_container(socket_path, container_id)
        lines = iter_tty_lines(reader) if tty else iter_lines(demux_stream_iter(reader))
        if not await _scan_ready(lines, callbacks):
            raise ReadinessError(container_id)
    except BaseException:
        await primary.close()
        raise
    return primary


async def _scan_ready(lines: AsyncGenerator[str, None], callbacks: SessionCallbacks) -> bool:
    """Echo *lines* up to the readiness line; ``False`` if they end first."""
    async with contextlib.aclosing(lines):
        async for line in lines:
            callbacks.output(line)
            if line.strip() == READY_MARKER:
                return True
    return False


async def release_container(
    socket_path: str,
    container_id: str,
    *,
    persistent: bool,
    callbacks: SessionCallbacks | None = None,
) -> None:
    """Stop a one-shot container and wait until the engine has removed it.

    Persistent containers are left running.  A container that is already
    stopped or gone is not an error.
    """
    if persistent:
        return
    callbacks = callbacks or SessionCallbacks()
    try:
        await sc.stop_container(socket_path, container_id, timeout=STOP_TIMEOUT)
        await sc.wait_container(socket_path, container_id, condition="removed")
    except (ContainerNotFound, ContainerNotRunning) as exc:
        callbacks.debug(f"ignored during release: {exc}")
