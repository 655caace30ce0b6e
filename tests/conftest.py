"""Shared fixtures for canon tests."""

from __future__ import annotations

import datetime
import os
import pathlib

import pytest
from canon.profiles import Profile


def _path_exists(path: pathlib.Path) -> bool:
    """Check if *path* exists, returning ``False`` on ``PermissionError``."""
    try:
        return path.exists()
    except PermissionError:
        return False


def _find_socket() -> str | None:
    """Detect an available container engine socket."""
    explicit = os.environ.get("CANON_SOCKET")
    if explicit and _path_exists(pathlib.Path(explicit)):
        return explicit

    xdg = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
    candidates = [
        pathlib.Path("/var/run/docker.sock"),
        pathlib.Path.home() / ".docker" / "run" / "docker.sock",
        pathlib.Path(xdg) / "podman" / "podman.sock",
        pathlib.Path("/run/podman/podman.sock"),
    ]
    for candidate in candidates:
        if _path_exists(candidate):
            return str(candidate)
    return None


SOCKET_PATH = _find_socket()
HAS_ENGINE = SOCKET_PATH is not None


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Skip tests marked ``requires_engine`` when no engine socket exists."""
    if HAS_ENGINE:
        return
    skip = pytest.mark.skip(reason="No container engine socket found (Docker or Podman)")
    for item in items:
        if "requires_engine" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def socket_path() -> str:
    """Return the detected socket path, or skip the test."""
    if SOCKET_PATH is None:
        pytest.skip("No container engine socket found")
    return SOCKET_PATH


@pytest.fixture
def profile(tmp_path: pathlib.Path) -> Profile:
    """A one-shot amd64 profile rooted at a temporary project directory."""
    return Profile(
        name="proj",
        arch="amd64",
        path=str(tmp_path),
        update_interval=datetime.timedelta(hours=24),
    )

