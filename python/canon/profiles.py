# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Resolved canon profiles.

A :class:`Profile` is the immutable result of layering the built-in
defaults, the ``defaults`` section and a named profile from the config
files, plus any CLI overrides (see :mod:`canon._config`).  Everything
downstream of configuration receives one of these and never mutates it.
"""

from __future__ import annotations

import dataclasses
import datetime
import platform as _platform

import yaml

from canon._helpers import format_duration

DEFAULT_PROFILE_NAME = "default"
DEFAULT_IMAGE_AMD64 = "ghcr.io/viamrobotics/canon:amd64"
DEFAULT_IMAGE_ARM64 = "ghcr.io/viamrobotics/canon:arm64"
KNOWN_ARCHES = ("amd64", "arm64")

_ARCH_ALIASES: dict[str, str] = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def host_arch() -> str:
    """Return the host CPU architecture in engine terms (``amd64`` or ``arm64``)."""
    machine = _platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


@dataclasses.dataclass(frozen=True)
class Profile:
    """Settings for one canon environment."""

    name: str = DEFAULT_PROFILE_NAME
    image: str = ""
    image_amd64: str = DEFAULT_IMAGE_AMD64
    image_arm64: str = DEFAULT_IMAGE_ARM64
    arch: str = dataclasses.field(default_factory=host_arch)
    minimum_date: datetime.datetime | None = None
    persistent: bool = False
    ssh: bool = True
    netrc: bool = True
    user: str = "testbot"
    group: str = "testbot"
    path: str = "/"
    update_interval: datetime.timedelta = datetime.timedelta(hours=24)
    update_persistent: bool = True

    @property
    def resolved_image(self) -> str:
        """The image to run: ``image`` if set, else the one for ``arch``."""
        if self.image:
            return self.image
        if self.arch == "amd64" and self.image_amd64:
            return self.image_amd64
        if self.arch == "arm64" and self.image_arm64:
            return self.image_arm64
        return ""

    @property
    def platform(self) -> str:
        """Engine platform string, e.g. ``linux/arm64``."""
        return f"linux/{self.arch}"

    @property
    def key(self) -> str:
        """Identity used in container labels: ``<name>/<arch>``."""
        return f"{self.name}/{self.arch}"

    def snapshot(self) -> dict[str, object]:
        """Return the profile as a dict of plain YAML scalars.

        Two profiles are equivalent exactly when their snapshots compare
        equal, including after a round-trip through :meth:`dump`.
        """
        return {
            "arch": self.arch,
            "group": self.group,
            "image": self.image,
            "image_amd64": self.image_amd64,
            "image_arm64": self.image_arm64,
            "minimum_date": self.minimum_date.isoformat() if self.minimum_date else None,
            "name": self.name,
            "netrc": self.netrc,
            "path": self.path,
            "persistent": self.persistent,
            "ssh": self.ssh,
            "update_interval": self.update_interval.total_seconds(),
            "update_persistent": self.update_persistent,
            "user": self.user,
        }

    def dump(self) -> str:
        """Serialise :meth:`snapshot` to YAML (stored in the profile-data label)."""
        return yaml.safe_dump(self.snapshot(), sort_keys=True)

    def display(self) -> str:
        """Human-readable YAML for ``canon config``."""
        data = self.snapshot()
        data["update_interval"] = format_duration(self.update_interval)
        data["resolved_image"] = self.resolved_image
        return yaml.safe_dump(data, sort_keys=True)
