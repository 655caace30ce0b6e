# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Data types shared across canon modules."""

from __future__ import annotations

import dataclasses


@dataclasses.dataclass(frozen=True)
class Mount:
    """A host path bind-mounted into the container.

    Attributes:
        source: Absolute host path.
        target: Absolute path inside the container.
        read_only: Mount without write access.

    """

    source: str
    target: str
    read_only: bool = False

    def to_api(self) -> dict[str, object]:
        """Return the engine ``HostConfig.Mounts`` entry for this mount."""
        return {
            "Type": "bind",
            "Source": self.source,
            "Target": self.target,
            "ReadOnly": self.read_only,
        }


@dataclasses.dataclass(frozen=True)
class ContainerSummary:
    """One managed container as shown by ``canon list``.

    Attributes:
        container_id: Full engine ID.
        name: Container name without the leading slash.
        state: Display state (``running``, ``oneshot``, ``stopped``, ``invalid``, ...).
        profile: ``<name>/<arch>`` from the profile label.
        image: Image reference the container was created from.
        type: ``one-shot``, ``persistent``, or ``""`` when unreadable.

    """

    container_id: str
    name: str
    state: str
    profile: str
    image: str
    type: str = ""


@dataclasses.dataclass(frozen=True)
class ExecSpec:
    """How to run the interactive command inside the container."""

    command: tuple[str, ...]
    user: str
    working_dir: str
    env: tuple[str, ...] = ()
    tty: bool = True
