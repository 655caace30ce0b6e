# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Async HTTP-over-Unix-socket client for Docker (and Docker-compatible Podman).

Each function opens its own connection to the Unix socket, performs the
HTTP request, and closes the connection.  Streaming endpoints (attach, exec
start) instead hand the open connection back to the caller, who owns it
until it is closed.

Uses unversioned Docker-compatible API paths (``/containers/create``, not
``/v1.43/containers/create``) so whatever API version the engine speaks is
used.
"""

from __future__ import annotations

import asyncio
import json
import os
import pathlib
import urllib.parse
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

from canon.errors import (
    ContainerNameConflict,
    ContainerNotFound,
    ContainerNotRunning,
    ImageNotFound,
    PlatformMismatch,
    PullError,
    SocketCommunicationError,
    SocketConnectionError,
)

# ---------------------------------------------------------------------------
# Socket detection
# ---------------------------------------------------------------------------


def detect_socket() -> str | None:
    """Auto-detect an available container engine socket.

    Detection order:
    1. ``CANON_SOCKET`` env var
    2. ``DOCKER_HOST`` env var, when it is a ``unix://`` URL
    3. Docker: ``/var/run/docker.sock``
    4. Docker Desktop without admin rights: ``~/.docker/run/docker.sock``
    5. Podman rootless: ``$XDG_RUNTIME_DIR/podman/podman.sock``
    6. Podman system: ``/run/podman/podman.sock``

    Returns:
        The path to the first socket found, or ``None``.

    """
    explicit = os.environ.get("CANON_SOCKET")
    if explicit and pathlib.Path(explicit).exists():
        return explicit

    docker_host = os.environ.get("DOCKER_HOST", "")
    if docker_host.startswith("unix://"):
        host_path = docker_host[len("unix://") :]
        if pathlib.Path(host_path).exists():
            return host_path

    xdg = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
    candidates = [
        pathlib.Path("/var/run/docker.sock"),
        pathlib.Path.home() / ".docker" / "run" / "docker.sock",
        pathlib.Path(xdg) / "podman" / "podman.sock",
        pathlib.Path("/run/podman/podman.sock"),
    ]
    for candidate in candidates:
        if candidate.exists():
            return str(candidate)
    return None


# ---------------------------------------------------------------------------
# Raw HTTP helpers
# ---------------------------------------------------------------------------


async def _open_connection(
    socket_path: str,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Open an async connection to a Unix socket."""
    try:
        return await asyncio.open_unix_connection(socket_path)
    except (OSError, ConnectionRefusedError) as exc:
        raise SocketConnectionError(socket_path, str(exc)) from exc


async def _send_request(
    writer: asyncio.StreamWriter,
    method: str,
    path: str,
    body: bytes | None = None,
    content_type: str = "application/json",
    *,
    upgrade: bool = False,
) -> None:
    """Write an HTTP/1.1 request to the writer.

    With ``upgrade`` the request asks the engine to hijack the connection
    into a raw bidirectional stream (``101 Switching Protocols``).
    """
    lines = [
        f"{method} {path} HTTP/1.1",
        "Host: localhost",
    ]
    if body is not None:
        lines.append(f"Content-Type: {content_type}")
        lines.append(f"Content-Length: {len(body)}")
    if upgrade:
        lines.append("Connection: Upgrade")
        lines.append("Upgrade: tcp")
    else:
        lines.append("Connection: close")
    lines.append("")
    lines.append("")

    header_bytes = "\r\n".join(lines).encode("ascii")
    writer.write(header_bytes)
    if body is not None:
        writer.write(body)
    await writer.drain()


async def _read_status_line(reader: asyncio.StreamReader) -> int:
    """Read the HTTP status line and return the status code."""
    line = await reader.readline()
    if not line:
        msg = "empty response"
        raise SocketCommunicationError(msg)
    parts = line.decode("ascii", errors="replace").split(None, 2)
    if len(parts) < 2:  # noqa: PLR2004
        msg = f"malformed status line: {line!r}"
        raise SocketCommunicationError(msg)
    return int(parts[1])


async def _read_headers(reader: asyncio.StreamReader) -> dict[str, str]:
    """Read HTTP headers until the blank line."""
    headers: dict[str, str] = {}
    while True:
        line = await reader.readline()
        stripped = line.strip()
        if not stripped:
            break
        decoded = stripped.decode("ascii", errors="replace")
        if ":" in decoded:
            key, value = decoded.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    return headers


async def _read_body(
    reader: asyncio.StreamReader,
    headers: dict[str, str],
) -> bytes:
    """Read the HTTP response body, handling Content-Length and chunked TE."""
    if headers.get("transfer-encoding", "").lower() == "chunked":
        return await _read_chunked(reader)

    content_length_str = headers.get("content-length")
    if content_length_str is not None:
        length = int(content_length_str)
        return await _read_exact_body(reader, length)

    # No Content-Length, no chunked: read until EOF
    parts: list[bytes] = []
    while True:
        chunk = await reader.read(65536)
        if not chunk:
            break
        parts.append(chunk)
    return b"".join(parts)


async def _read_exact_body(reader: asyncio.StreamReader, length: int) -> bytes:
    """Read exactly ``length`` bytes from the reader."""
    data = b""
    while len(data) < length:
        chunk = await reader.read(length - len(data))
        if not chunk:
            break
        data += chunk
    return data


async def _iter_chunks(
    reader: asyncio.StreamReader,
    headers: dict[str, str],
) -> AsyncGenerator[bytes, None]:
    """Yield body pieces as they arrive, de-chunking if necessary."""
    if headers.get("transfer-encoding", "").lower() != "chunked":
        while True:
            piece = await reader.read(65536)
            if not piece:
                return
            yield piece
    while True:
        size_line = await reader.readline()
        if not size_line:
            return
        size_str = size_line.strip().decode("ascii", errors="replace")
        if not size_str:
            continue
        chunk_size = int(size_str.split(";", 1)[0], 16)
        if chunk_size == 0:
            await reader.readline()  # trailing \r\n
            return
        chunk_data = await _read_exact_body(reader, chunk_size)
        await reader.readline()  # trailing \r\n after chunk
        yield chunk_data


async def _read_chunked(reader: asyncio.StreamReader) -> bytes:
    """Read a chunked transfer-encoded body."""
    parts = [
        chunk async for chunk in _iter_chunks(reader, {"transfer-encoding": "chunked"})
    ]
    return b"".join(parts)


async def _request(
    socket_path: str,
    method: str,
    path: str,
    body: dict[str, Any] | None = None,
) -> tuple[int, bytes]:
    """Make an HTTP request and return (status_code, response_body).

    Opens a new connection per call.
    """
    reader, writer = await _open_connection(socket_path)
    try:
        body_bytes = json.dumps(body).encode("utf-8") if body is not None else None
        await _send_request(writer, method, path, body_bytes)

        status = await _read_status_line(reader)
        headers = await _read_headers(reader)
        response_body = await _read_body(reader, headers)
    except SocketConnectionError:
        raise
    except (OSError, asyncio.IncompleteReadError) as exc:
        raise SocketCommunicationError(str(exc)) from exc
    else:
        return status, response_body
    finally:
        writer.close()
        await writer.wait_closed()


async def _request_stream(
    socket_path: str,
    method: str,
    path: str,
    body: dict[str, Any] | None = None,
    *,
    upgrade: bool = False,
) -> tuple[int, dict[str, str], asyncio.StreamReader, asyncio.StreamWriter]:
    """Make an HTTP request and return (status, headers, reader, writer) for streaming.

    The caller is responsible for closing the writer.
    """
    reader, writer = await _open_connection(socket_path)
    try:
        body_bytes = json.dumps(body).encode("utf-8") if body is not None else None
        await _send_request(writer, method, path, body_bytes, upgrade=upgrade)

        status = await _read_status_line(reader)
        headers = await _read_headers(reader)
    except Exception:
        writer.close()
        await writer.wait_closed()
        raise
    else:
        return status, headers, reader, writer


async def _hijack(
    socket_path: str,
    path: str,
    body: dict[str, Any] | None,
    what: str,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Open a hijacked raw stream, raising on a non-success status."""
    status, _headers, reader, writer = await _request_stream(
        socket_path, "POST", path, body, upgrade=True
    )
    # 101 = upgraded, 200 = raw stream without upgrade
    if status in (101, 200):
        return reader, writer
    rest = await reader.read(65536)
    writer.close()
    await writer.wait_closed()
    _check_container_response(status, rest, what)
    msg = f"{what} attach failed: HTTP {status}"
    raise SocketCommunicationError(msg)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _error_message(body: bytes) -> str:
    """Extract the engine's ``{"message": ...}`` text, falling back to the raw body."""
    text = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(text)
    except ValueError:
        return text.strip()
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return str(data["message"])
    return text.strip()


def _check_container_response(
    status: int,
    body: bytes,
    container_id: str,
) -> None:
    """Raise appropriate errors based on HTTP status codes."""
    if status < 400:  # noqa: PLR2004
        return
    if status == 404:  # noqa: PLR2004
        raise ContainerNotFound(container_id)
    if status == 409:  # noqa: PLR2004
        raise ContainerNotRunning(container_id)
    message = _error_message(body)
    # Docker and Podman report stopped containers/execs with 500s in some paths
    lowered = message.lower()
    if (
        "container state improper" in lowered
        or "cannot resize a stopped container" in lowered
        or "is not running" in lowered
    ):
        raise ContainerNotRunning(container_id)
    if "no such exec" in lowered or "no such container" in lowered:
        raise ContainerNotFound(container_id)
    msg = f"HTTP {status}: {message}"
    raise SocketCommunicationError(msg)


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------


async def create_container(  # noqa: PLR0913
    socket_path: str,
    image: str,
    *,
    name: str | None = None,
    platform: str | None = None,
    command: list[str] | None = None,
    entrypoint: list[str] | None = None,
    env: list[str] | None = None,
    labels: dict[str, str] | None = None,
    host_config: dict[str, Any] | None = None,
    working_dir: str | None = None,
    tty: bool = False,
    open_stdin: bool = False,
) -> tuple[str, list[str]]:
    """Create a container and return its ID and any engine warnings.

    Args:
        socket_path: Path to the container engine Unix socket.
        image: Image reference to use.
        name: Container name.  The engine enforces uniqueness.
        platform: ``os/arch`` the image must match (e.g. ``linux/arm64``).
        command: Command to run (default: image CMD).
        entrypoint: Entrypoint override; ``[]`` clears the image entrypoint.
        env: ``KEY=value`` strings.
        labels: OCI labels to attach.
        host_config: Docker-compatible ``HostConfig`` dict (mounts, auto-remove).
        working_dir: Working directory of the primary process.
        tty: Allocate a pseudo-terminal for the primary process.
        open_stdin: Keep stdin open for the first attached client.

    Returns:
        ``(container_id, warnings)``.

    Raises:
        ImageNotFound: The image is not present locally.
        PlatformMismatch: The local image is for another platform.
        ContainerNameConflict: ``name`` is already taken.

    """
    payload: dict[str, Any] = {
        "Image": image,
        "AttachStdout": True,
        "AttachStderr": True,
        "Tty": tty,
    }
    if open_stdin:
        payload["AttachStdin"] = True
        payload["OpenStdin"] = True
        payload["StdinOnce"] = True
    if command is not None:
        payload["Cmd"] = command
    if entrypoint is not None:
        payload["Entrypoint"] = entrypoint
    if working_dir is not None:
        payload["WorkingDir"] = working_dir
    if env:
        payload["Env"] = env
    if labels is not None:
        payload["Labels"] = labels
    if host_config is not None:
        payload["HostConfig"] = host_config

    params: dict[str, str] = {}
    if name is not None:
        params["name"] = name
    if platform is not None:
        params["platform"] = platform
    path = "/containers/create"
    if params:
        path = f"{path}?{urllib.parse.urlencode(params)}"

    status, body = await _request(socket_path, "POST", path, payload)

    if status >= 400:  # noqa: PLR2004
        message = _error_message(body)
        if "does not match the specified platform" in message:
            raise PlatformMismatch(image, platform or "")
        if status == 404 or "No such image" in message:  # noqa: PLR2004
            raise ImageNotFound(image)
        if status == 409:  # noqa: PLR2004
            raise ContainerNameConflict(name or image)
        msg = f"create failed: HTTP {status}: {message}"
        raise SocketCommunicationError(msg)

    data = json.loads(body)
    return str(data["Id"]), [str(w) for w in data.get("Warnings") or []]


async def start_container(socket_path: str, container_id: str) -> None:
    """Start a created container."""
    status, body = await _request(socket_path, "POST", f"/containers/{container_id}/start")
    # 204 = success, 304 = already started
    if status not in (204, 304):
        _check_container_response(status, body, container_id)


async def stop_container(socket_path: str, container_id: str, timeout: int = 10) -> None:
    """Stop a running container, killing it after ``timeout`` seconds."""
    status, body = await _request(
        socket_path, "POST", f"/containers/{container_id}/stop?t={timeout}"
    )
    # 204 = success, 304 = already stopped
    if status not in (204, 304):
        _check_container_response(status, body, container_id)


async def wait_container(
    socket_path: str,
    container_id: str,
    condition: str = "not-running",
) -> int:
    """Block until the container reaches ``condition`` and return its exit status.

    ``condition`` is one of ``not-running``, ``next-exit`` or ``removed``.
    """
    status, body = await _request(
        socket_path,
        "POST",
        f"/containers/{container_id}/wait?condition={condition}",
    )
    _check_container_response(status, body, container_id)
    data = json.loads(body) if body else {}
    error = data.get("Error") or {}
    if isinstance(error, dict) and error.get("Message"):
        msg = f"error waiting for container {container_id[:12]}: {error['Message']}"
        raise SocketCommunicationError(msg)
    return int(data.get("StatusCode", 0))


async def remove_container(
    socket_path: str,
    container_id: str,
    *,
    force: bool = False,
) -> None:
    """Remove a container."""
    force_param = "true" if force else "false"
    status, body = await _request(
        socket_path,
        "DELETE",
        f"/containers/{container_id}?force={force_param}",
    )
    if status not in (200, 204):
        _check_container_response(status, body, container_id)


async def inspect_container(socket_path: str, container_id: str) -> dict[str, Any]:
    """Inspect a container, returning its full JSON state."""
    status, body = await _request(socket_path, "GET", f"/containers/{container_id}/json")
    _check_container_response(status, body, container_id)
    return json.loads(body)  # type: ignore[no-any-return]


async def list_containers(
    socket_path: str,
    *,
    label_filters: list[str] | None = None,
) -> list[dict[str, Any]]:
    """List containers (running and stopped), optionally filtered by labels.

    Uses ``GET /containers/json?all=true``.

    Args:
        socket_path: Path to the container engine Unix socket.
        label_filters: Label filter strings, all of which must match
            (e.g. ``["com.viam.canon.type=persistent"]``).  A bare key
            matches any container carrying that label.

    Returns:
        List of container JSON objects from the engine.

    """
    path = "/containers/json?all=true"
    if label_filters:
        filters = json.dumps({"label": label_filters})
        path = f"{path}&filters={urllib.parse.quote(filters)}"
    status, body = await _request(socket_path, "GET", path)
    if status >= 400:  # noqa: PLR2004
        msg = f"list containers failed: HTTP {status}: {_error_message(body)}"
        raise SocketCommunicationError(msg)
    return json.loads(body)  # type: ignore[no-any-return]


async def attach_container(
    socket_path: str,
    container_id: str,
    *,
    stdin: bool = False,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Attach to a container's primary process and return the hijacked stream.

    Output is multiplexed (see :mod:`canon._stream`) unless the container
    was created with a TTY.  The caller must close the writer.
    """
    params = {"stream": "1", "stdout": "1", "stderr": "1"}
    if stdin:
        params["stdin"] = "1"
    path = f"/containers/{container_id}/attach?{urllib.parse.urlencode(params)}"
    return await _hijack(socket_path, path, None, container_id)


async def resize_container(
    socket_path: str,
    container_id: str,
    rows: int,
    cols: int,
) -> None:
    """Resize the TTY of a container's primary process."""
    status, body = await _request(
        socket_path,
        "POST",
        f"/containers/{container_id}/resize?h={rows}&w={cols}",
    )
    _check_container_response(status, body, container_id)


# ---------------------------------------------------------------------------
# Exec
# ---------------------------------------------------------------------------


async def exec_create(  # noqa: PLR0913
    socket_path: str,
    container_id: str,
    command: list[str],
    *,
    user: str | None = None,
    working_dir: str | None = None,
    env: list[str] | None = None,
    tty: bool = False,
    attach_stdin: bool = False,
) -> str:
    """Create an exec instance and return its ID."""
    payload: dict[str, object] = {
        "AttachStdout": True,
        "AttachStderr": True,
        "Tty": tty,
        "Cmd": command,
    }
    if attach_stdin:
        payload["AttachStdin"] = True
    if user:
        payload["User"] = user
    if working_dir:
        payload["WorkingDir"] = working_dir
    if env:
        payload["Env"] = env
    status, body = await _request(
        socket_path,
        "POST",
        f"/containers/{container_id}/exec",
        payload,
    )
    if status >= 400:  # noqa: PLR2004
        _check_container_response(status, body, container_id)

    data = json.loads(body)
    return str(data["Id"])


async def exec_start_hijack(
    socket_path: str,
    exec_id: str,
    *,
    tty: bool = True,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Start an exec instance attached, returning the hijacked stream.

    Starting and attaching are one request in the engine API: the command
    begins running as soon as this returns.  The caller must close the writer.
    """
    payload = {"Detach": False, "Tty": tty}
    return await _hijack(socket_path, f"/exec/{exec_id}/start", payload, exec_id)


async def exec_resize(socket_path: str, exec_id: str, rows: int, cols: int) -> None:
    """Resize the TTY of an exec instance."""
    status, body = await _request(
        socket_path,
        "POST",
        f"/exec/{exec_id}/resize?h={rows}&w={cols}",
    )
    _check_container_response(status, body, exec_id)


async def exec_inspect_exit_code(socket_path: str, exec_id: str) -> int:
    """Inspect an exec instance and return its exit code (``-1`` while running)."""
    status, body = await _request(socket_path, "GET", f"/exec/{exec_id}/json")
    _check_container_response(status, body, exec_id)
    data = json.loads(body)
    exit_code = data.get("ExitCode")
    return -1 if exit_code is None else int(exit_code)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


async def inspect_image(socket_path: str, image: str) -> dict[str, Any]:
    """Inspect a local image by reference or ID."""
    status, body = await _request(
        socket_path, "GET", f"/images/{urllib.parse.quote(image, safe='')}/json"
    )
    if status == 404:  # noqa: PLR2004
        raise ImageNotFound(image)
    if status >= 400:  # noqa: PLR2004
        msg = f"image inspect failed: HTTP {status}: {_error_message(body)}"
        raise SocketCommunicationError(msg)
    return json.loads(body)  # type: ignore[no-any-return]


def split_reference(image: str) -> tuple[str, str]:
    """Split ``repo[:tag|@digest]`` into ``(repo, tag)``.

    A registry port (``host:5000/img``) is not mistaken for a tag.  The tag
    defaults to ``latest``; a digest is returned in the tag position.
    """
    if "@" in image:
        repo, digest = image.split("@", 1)
        return repo, digest
    slash = image.rfind("/")
    colon = image.rfind(":")
    if colon > slash:
        return image[:colon], image[colon + 1 :]
    return image, "latest"


async def pull_image(
    socket_path: str,
    image: str,
    platform: str | None = None,
) -> AsyncGenerator[dict[str, Any], None]:
    """Pull an image, yielding the engine's JSON progress messages.

    Uses ``POST /images/create?fromImage=...&tag=...&platform=...``.

    Raises:
        ImageNotFound: The registry does not know the image.
        PullError: The engine reported an error mid-stream.

    """
    repo, tag = split_reference(image)
    params = {"fromImage": repo, "tag": tag}
    if platform:
        params["platform"] = platform
    status, headers, reader, writer = await _request_stream(
        socket_path, "POST", f"/images/create?{urllib.parse.urlencode(params)}"
    )
    try:
        if status >= 400:  # noqa: PLR2004
            body = await _read_body(reader, headers)
            if status == 404:  # noqa: PLR2004
                raise ImageNotFound(image)
            raise PullError(image, f"HTTP {status}: {_error_message(body)}")

        pending = b""
        async for chunk in _iter_chunks(reader, headers):
            pending += chunk
            while b"\n" in pending:
                raw, pending = pending.split(b"\n", 1)
                message = _decode_progress(raw)
                if message is not None:
                    if message.get("error"):
                        raise PullError(image, str(message["error"]))
                    yield message
        message = _decode_progress(pending)
        if message is not None:
            if message.get("error"):
                raise PullError(image, str(message["error"]))
            yield message
    except (OSError, asyncio.IncompleteReadError) as exc:
        raise SocketCommunicationError(str(exc)) from exc
    finally:
        writer.close()
        await writer.wait_closed()


def _decode_progress(raw: bytes) -> dict[str, Any] | None:
    """Decode one JSON progress line, ignoring blanks and garbage."""
    stripped = raw.strip()
    if not stripped:
        return None
    try:
        data = json.loads(stripped)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None
