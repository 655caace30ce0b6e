# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Label schema for canon-managed containers.

Every container canon creates carries three labels:

``com.viam.canon.type``
    ``one-shot`` or ``persistent``.
``com.viam.canon.profile``
    ``<profile name>/<arch>``; the identity used by ``stop``/``terminate``.
``com.viam.canon.profile-data``
    YAML dump of the profile the container was created from.

Labels are untrusted input (anything can label a container), so reads go
through :func:`parse_labels`, which rejects anything that does not fit the
schema.
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Any

import yaml

from canon.errors import MalformedLabels

if TYPE_CHECKING:
    from canon.profiles import Profile

LABEL_PREFIX = "com.viam.canon"
LABEL_TYPE = f"{LABEL_PREFIX}.type"
LABEL_PROFILE = f"{LABEL_PREFIX}.profile"
LABEL_PROFILE_DATA = f"{LABEL_PREFIX}.profile-data"

TYPE_ONE_SHOT = "one-shot"
TYPE_PERSISTENT = "persistent"
CONTAINER_TYPES = (TYPE_ONE_SHOT, TYPE_PERSISTENT)


@dataclasses.dataclass(frozen=True)
class CanonLabels:
    """Validated canon labels of one container."""

    type: str
    profile: str
    profile_data: dict[str, Any] | None = None

    @property
    def persistent(self) -> bool:
        """Whether the container is a persistent one."""
        return self.type == TYPE_PERSISTENT


def build_labels(profile: Profile) -> dict[str, str]:
    """Labels to attach to a new container for *profile*."""
    return {
        LABEL_TYPE: TYPE_PERSISTENT if profile.persistent else TYPE_ONE_SHOT,
        LABEL_PROFILE: profile.key,
        LABEL_PROFILE_DATA: profile.dump(),
    }


def parse_labels(container_id: str, labels: dict[str, str] | None) -> CanonLabels:
    """Validate and decode canon labels.

    ``profile_data`` is ``None`` when the label is absent.

    Raises:
        MalformedLabels: The type or profile label is missing or invalid, or
            the profile data is not a YAML map.

    """
    labels = labels or {}
    container_type = labels.get(LABEL_TYPE)
    if container_type not in CONTAINER_TYPES:
        raise MalformedLabels(container_id, f"bad {LABEL_TYPE} {container_type!r}")

    profile = labels.get(LABEL_PROFILE, "")
    name, sep, arch = profile.partition("/")
    if not (name and sep and arch):
        raise MalformedLabels(container_id, f"bad {LABEL_PROFILE} {profile!r}")

    raw_data = labels.get(LABEL_PROFILE_DATA)
    data: dict[str, Any] | None = None
    if raw_data is not None:
        try:
            loaded = yaml.safe_load(raw_data)
        except yaml.YAMLError as exc:
            raise MalformedLabels(container_id, f"unreadable {LABEL_PROFILE_DATA}") from exc
        if not isinstance(loaded, dict):
            raise MalformedLabels(container_id, f"{LABEL_PROFILE_DATA} is not a map")
        data = loaded

    return CanonLabels(type=container_type, profile=profile, profile_data=data)


def profile_filter(profile_key: str | None = None) -> str:
    """Engine label filter matching one profile, or any canon container."""
    if profile_key is None:
        return LABEL_PROFILE
    return f"{LABEL_PROFILE}={profile_key}"


def persistent_filters(profile: Profile) -> list[str]:
    """Engine label filters matching persistent containers for *profile*."""
    return [f"{LABEL_TYPE}={TYPE_PERSISTENT}", profile_filter(profile.key)]
