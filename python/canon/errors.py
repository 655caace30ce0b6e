# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

from __future__ import annotations


class CanonError(Exception):
    """Base exception for all canon errors."""


# ---------------------------------------------------------------------------
# Engine / socket
# ---------------------------------------------------------------------------


class SocketError(CanonError):
    """Error related to socket communication with the container engine."""


class SocketConnectionError(SocketError):
    """Cannot connect to the container engine socket."""

    def __init__(self, socket_path: str, detail: str = "") -> None:
        self.socket_path = socket_path
        msg = f"Cannot connect to socket at {socket_path}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class SocketCommunicationError(SocketError):
    """Error during communication over the socket."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        msg = "Socket communication error"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class EngineNotRunning(SocketError):
    """No container engine socket found."""

    def __init__(self) -> None:
        super().__init__(
            "No container engine socket found. "
            "Is Docker (or Podman) running? "
            "Set DOCKER_HOST or CANON_SOCKET to point at the engine socket."
        )


class ContainerError(CanonError):
    """Error related to a specific container."""

    def __init__(self, container_id: str, detail: str = "") -> None:
        self.container_id = container_id
        msg = f"Container {container_id}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class ContainerNotFound(ContainerError):
    """Container (or exec instance) does not exist (HTTP 404)."""

    def __init__(self, container_id: str) -> None:
        super().__init__(container_id, "not found")


class ContainerNotRunning(ContainerError):
    """Container exists but is not running (HTTP 409)."""

    def __init__(self, container_id: str) -> None:
        super().__init__(container_id, "is not running")


class ContainerNameConflict(ContainerError):
    """A container with the requested name already exists."""

    def __init__(self, name: str) -> None:
        super().__init__(
            name,
            "name is already in use (another canon invocation may have created it); "
            "retry, or run 'canon terminate' first",
        )


class ImageUnavailable(CanonError):
    """The requested image cannot be used as-is; pulling it may help."""

    def __init__(self, image: str, msg: str) -> None:
        self.image = image
        super().__init__(msg)


class ImageNotFound(ImageUnavailable):
    """Requested image does not exist locally."""

    def __init__(self, image: str) -> None:
        super().__init__(image, f"Image not found: {image}")


class PlatformMismatch(ImageUnavailable):
    """Local image exists but for a different platform."""

    def __init__(self, image: str, platform: str) -> None:
        self.platform = platform
        super().__init__(image, f"Image {image} does not match platform {platform}")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigError(CanonError):
    """Invalid or inconsistent configuration. Never resolved automatically."""


class ProfileNotFound(ConfigError):
    """The requested profile name is not defined in any config file."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"No profile named {name!r}")


class PathOutsideProfile(ConfigError):
    """The current directory is not inside the profile's root path."""

    def __init__(self, cwd: str, root: str) -> None:
        self.cwd = cwd
        self.root = root
        super().__init__(
            f"Current directory {cwd} is not within the profile path {root}; "
            "cd into the project or select another profile with --profile"
        )


class ProfileDrift(ConfigError):
    """A persistent container was created with different profile settings."""

    def __init__(self, profile: str, detail: str = "don't match current settings") -> None:
        self.profile = profile
        super().__init__(
            f"Existing container settings for {profile} {detail}, "
            "please terminate all containers and retry"
        )


class AmbiguousContainers(ConfigError):
    """More than one container matches where exactly one is expected."""

    def __init__(self, profile: str, count: int, remedy: str) -> None:
        self.profile = profile
        self.count = count
        super().__init__(f"{count} containers match {profile}, {remedy}")


class MalformedLabels(ConfigError):
    """A managed container carries missing or invalid canon labels."""

    def __init__(self, container_id: str, detail: str) -> None:
        self.container_id = container_id
        super().__init__(f"Container {container_id[:12]} has malformed canon labels: {detail}")


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class SessionError(CanonError):
    """Error while provisioning or bridging an interactive session."""


class ReadinessError(SessionError):
    """The setup script's output ended before it signalled readiness."""

    def __init__(self, container_id: str) -> None:
        self.container_id = container_id
        super().__init__(
            f"Container {container_id[:12]} exited or closed its output before setup completed"
        )


class SessionCancelled(SessionError):
    """The session was abandoned before the remote output finished draining."""

    def __init__(self) -> None:
        super().__init__("Session cancelled")


class MultiContainerError(CanonError):
    """One or more per-container operations failed.

    ``failures`` lists ``(container label, exception)`` pairs in the order
    they were attempted.
    """

    def __init__(self, action: str, failures: list[tuple[str, BaseException]]) -> None:
        self.action = action
        self.failures = failures
        detail = "; ".join(f"{name}: {exc}" for name, exc in failures)
        super().__init__(f"Failed to {action} {len(failures)} container(s): {detail}")


# ---------------------------------------------------------------------------
# Image updates
# ---------------------------------------------------------------------------


class UpdateError(CanonError):
    """Error while updating images or the update cache."""


class UpdateLockHeld(UpdateError):
    """Another canon process holds the update lock."""

    def __init__(self, lock_path: str) -> None:
        self.lock_path = lock_path
        super().__init__(f"Another canon process is holding {lock_path}")


class PullError(UpdateError):
    """The engine reported an error while pulling an image."""

    def __init__(self, image: str, detail: str) -> None:
        self.image = image
        super().__init__(f"Failed to pull {image}: {detail}")
