# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

from __future__ import annotations

from importlib.metadata import version

from canon._config import CanonConfig, all_profiles, load_config, resolve_profile
from canon.errors import (
    AmbiguousContainers,
    CanonError,
    ConfigError,
    ContainerError,
    ContainerNameConflict,
    ContainerNotFound,
    ContainerNotRunning,
    EngineNotRunning,
    ImageNotFound,
    ImageUnavailable,
    MalformedLabels,
    MultiContainerError,
    PathOutsideProfile,
    PlatformMismatch,
    ProfileDrift,
    ProfileNotFound,
    PullError,
    ReadinessError,
    SessionCancelled,
    SessionError,
    SocketCommunicationError,
    SocketConnectionError,
    SocketError,
    UpdateError,
    UpdateLockHeld,
)
from canon.profiles import Profile
from canon.types import ContainerSummary, ExecSpec, Mount

__version__ = version("canon")


def get_version() -> str:
    """Return the canon package version string."""
    return __version__


__all__ = [
    "AmbiguousContainers",
    "CanonConfig",
    "CanonError",
    "ConfigError",
    "ContainerError",
    "ContainerNameConflict",
    "ContainerNotFound",
    "ContainerNotRunning",
    "ContainerSummary",
    "EngineNotRunning",
    "ExecSpec",
    "ImageNotFound",
    "ImageUnavailable",
    "MalformedLabels",
    "Mount",
    "MultiContainerError",
    "PathOutsideProfile",
    "PlatformMismatch",
    "Profile",
    "ProfileDrift",
    "ProfileNotFound",
    "PullError",
    "ReadinessError",
    "SessionCancelled",
    "SessionError",
    "SocketCommunicationError",
    "SocketConnectionError",
    "SocketError",
    "UpdateError",
    "UpdateLockHeld",
    "all_profiles",
    "get_version",
    "load_config",
    "resolve_profile",
]
