# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Queries over canon-managed containers: list, stop/terminate, lookup, drift."""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING, Any

from canon import _socket_client as sc
from canon._helpers import short_id
from canon._labels import (
    LABEL_PROFILE,
    TYPE_ONE_SHOT,
    parse_labels,
    persistent_filters,
    profile_filter,
)
from canon.errors import (
    AmbiguousContainers,
    ContainerNotFound,
    ContainerNotRunning,
    MalformedLabels,
    MultiContainerError,
)
from canon.types import ContainerSummary

if TYPE_CHECKING:
    from canon._callbacks import SessionCallbacks
    from canon.profiles import Profile

STOP_TIMEOUT = 10


def container_name(container: dict[str, Any]) -> str:
    """Primary name of a container from a list entry, without the leading slash."""
    names = container.get("Names") or []
    if names:
        return str(names[0]).lstrip("/")
    return short_id(str(container.get("Id", "")))


def display_state(engine_state: str, container_type: str) -> str:
    """Map an engine state to what ``canon list`` shows."""
    if engine_state == "running" and container_type == TYPE_ONE_SHOT:
        return "oneshot"
    if engine_state == "exited":
        return "stopped"
    return engine_state


async def list_managed(socket_path: str) -> list[ContainerSummary]:
    """List every container (stopped ones included) carrying the profile label.

    Containers whose canon labels fail validation are reported with state
    ``invalid`` rather than aborting the listing.
    """
    containers = await sc.list_containers(socket_path, label_filters=[profile_filter()])
    summaries = []
    for c in containers:
        cid = str(c.get("Id", ""))
        labels = c.get("Labels") or {}
        try:
            parsed = parse_labels(cid, labels)
        except MalformedLabels:
            state, ctype = "invalid", ""
        else:
            ctype = parsed.type
            state = display_state(str(c.get("State", "")), ctype)
        summaries.append(
            ContainerSummary(
                container_id=cid,
                name=container_name(c),
                state=state,
                profile=str(labels.get(LABEL_PROFILE, "")),
                image=str(c.get("Image", "")),
                type=ctype,
            )
        )
    return summaries


async def stop_or_terminate(  # noqa: PLR0913
    socket_path: str,
    profile_key: str,
    *,
    all_: bool = False,
    remove: bool = False,
    callbacks: SessionCallbacks | None = None,
) -> list[str]:
    """Stop (and optionally remove) the containers for a profile.

    Args:
        socket_path: Path to the container engine Unix socket.
        profile_key: ``<name>/<arch>`` of the current profile.
        all_: Act on every canon container instead of only *profile_key*.
        remove: Force-remove each container after stopping it (terminate).
        callbacks: Receives a status line per container.

    Returns:
        Profile keys of the containers acted on.

    Raises:
        AmbiguousContainers: Several containers match and *all_* is false.
            Nothing is stopped in that case.
        MultiContainerError: One or more containers could not be stopped or
            removed; the others were still processed.

    """
    label_filter = profile_filter(None if all_ else profile_key)
    containers = await sc.list_containers(socket_path, label_filters=[label_filter])
    if len(containers) > 1 and not all_:
        raise AmbiguousContainers(
            profile_key, len(containers), "please retry with the '--all' option"
        )

    verb = "terminating" if remove else "stopping"
    done: list[str] = []
    failures: list[tuple[str, BaseException]] = []
    for c in containers:
        cid = str(c.get("Id", ""))
        label = str((c.get("Labels") or {}).get(LABEL_PROFILE, short_id(cid)))
        if callbacks is not None:
            callbacks.status(f"{verb} {label}")
        try:
            with contextlib.suppress(ContainerNotFound):
                await sc.stop_container(socket_path, cid, timeout=STOP_TIMEOUT)
                if remove:
                    # a stopped auto-remove container may already be on its way out (409)
                    with contextlib.suppress(ContainerNotRunning):
                        await sc.remove_container(socket_path, cid, force=True)
        except Exception as exc:  # noqa: BLE001
            failures.append((label, exc))
        else:
            done.append(label)

    if failures:
        raise MultiContainerError("terminate" if remove else "stop", failures)
    return done


async def find_persistent(socket_path: str, profile: Profile) -> dict[str, Any] | None:
    """Return the persistent container for *profile*, or ``None``.

    Raises:
        AmbiguousContainers: More than one persistent container matches.

    """
    containers = await sc.list_containers(socket_path, label_filters=persistent_filters(profile))
    if len(containers) > 1:
        raise AmbiguousContainers(
            profile.name, len(containers), "please terminate all containers and retry"
        )
    if not containers:
        return None
    return containers[0]


async def check_image_drift(socket_path: str, container_id: str) -> bool:
    """Whether the container runs an older image than its tag now points to.

    Compares the container's image ID with the ID the image reference it was
    created from currently resolves to.
    """
    info = await sc.inspect_container(socket_path, container_id)
    container_image_id = str(info.get("Image", ""))
    image_ref = str((info.get("Config") or {}).get("Image", ""))
    image_info = await sc.inspect_image(socket_path, image_ref)
    return str(image_info.get("Id", "")) != container_image_id
