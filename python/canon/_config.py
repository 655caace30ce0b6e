# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Configuration loading with project-level -> user-level precedence.

Config files are YAML maps whose top-level keys are profile names, plus a
few reserved keys:

``defaults``
    Applied to every profile before the profile's own keys.  Its
    ``profile`` key names the fallback profile.
``default_profile``
    Same as ``defaults.profile``.
``socket``
    Container engine socket path.
``history``
    ``false`` disables the session history log.
"""

from __future__ import annotations

import dataclasses
import datetime
import os
from pathlib import Path
from typing import Any

import yaml

from canon._helpers import parse_duration, parse_iso_timestamp
from canon.errors import ConfigError, ProfileNotFound
from canon.profiles import DEFAULT_PROFILE_NAME, KNOWN_ARCHES, Profile

PROJECT_CONFIG_NAMES = ("canon.yaml", ".canon.yaml")
USER_CONFIG_PATH = Path("~/.config/canon.yaml")

_RESERVED_KEYS = frozenset({"defaults", "default_profile", "socket", "history"})
_ARCH_IMAGE_KEYS = ("image_amd64", "image_arm64")
_BOOL_FIELDS = frozenset({"persistent", "ssh", "netrc", "update_persistent"})
_STR_FIELDS = frozenset({"image", "image_amd64", "image_arm64", "arch", "user", "group"})


@dataclasses.dataclass(frozen=True)
class CanonConfig:
    """Merged contents of every config file that was found.

    Attributes:
        data: Deep-merged raw YAML map.
        sources: Config files that contributed, lowest precedence first.

    """

    data: dict[str, Any] = dataclasses.field(default_factory=dict)
    sources: tuple[Path, ...] = ()

    @property
    def socket(self) -> str | None:
        """Engine socket path from the ``socket`` key, if set."""
        value = self.data.get("socket")
        return str(value) if value else None

    @property
    def history(self) -> bool:
        """Whether the session history log is enabled."""
        return self.data.get("history", True) is not False

    @property
    def defaults(self) -> dict[str, Any]:
        """The ``defaults`` section (empty if absent)."""
        value = self.data.get("defaults")
        return value if isinstance(value, dict) else {}

    @property
    def fallback_profile(self) -> str | None:
        """Profile named by ``default_profile`` or ``defaults.profile``."""
        for value in (self.data.get("default_profile"), self.defaults.get("profile")):
            if isinstance(value, str) and value:
                return value
        return None

    def profile_names(self) -> list[str]:
        """Names of every profile defined in the config files."""
        return sorted(
            name
            for name, value in self.data.items()
            if name not in _RESERVED_KEYS and isinstance(value, dict)
        )


def find_project_config(start: Path) -> Path | None:
    """Walk up from *start* looking for ``canon.yaml`` or ``.canon.yaml``."""
    current = start.resolve()
    while True:
        for name in PROJECT_CONFIG_NAMES:
            candidate = current / name
            if candidate.is_file():
                return candidate
        if current.parent == current:
            return None
        current = current.parent


def load_config(cwd: Path | None = None, config_path: Path | None = None) -> CanonConfig:
    """Load configuration with precedence: user > project.

    1. Start from an empty map
    2. Overlay the nearest project ``canon.yaml`` (profiles without ``path``
       get the file's directory)
    3. Overlay the user config, ``~/.config/canon.yaml`` or *config_path*

    Raises:
        ConfigError: A file is unreadable or not a YAML map, or an explicit
            *config_path* does not exist.

    """
    merged: dict[str, Any] = {}
    sources: list[Path] = []

    project = find_project_config(cwd or Path.cwd())
    if project is not None:
        layer = _read_yaml(project)
        for name, value in layer.items():
            if name not in _RESERVED_KEYS and isinstance(value, dict) and "path" not in value:
                value["path"] = str(project.parent)
        merged = _merge_maps(merged, layer)
        sources.append(project)

    if config_path is not None:
        user_path = config_path.expanduser()
        if not user_path.is_file():
            msg = f"Config file not found: {user_path}"
            raise ConfigError(msg)
    else:
        user_path = USER_CONFIG_PATH.expanduser()
    if user_path.is_file():
        merged = _merge_maps(merged, _read_yaml(user_path))
        sources.append(user_path)

    return CanonConfig(data=merged, sources=tuple(sources))


def _read_yaml(path: Path) -> dict[str, Any]:
    """Parse a YAML config file into a map."""
    try:
        data = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as exc:
        msg = f"Cannot read config {path}: {exc}"
        raise ConfigError(msg) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Config {path} must be a YAML map"
        raise ConfigError(msg)
    return data


def _apply_layer(base: dict[str, Any], layer: dict[str, Any]) -> dict[str, Any]:
    """Overlay profile settings, keeping ``image`` and the arch images exclusive.

    A layer that sets ``image`` hides arch-specific images from lower layers,
    and a layer that sets an arch-specific image hides a lower ``image``.
    """
    out = dict(base)
    if "image" in layer:
        for key in _ARCH_IMAGE_KEYS:
            out.pop(key, None)
    if any(key in layer for key in _ARCH_IMAGE_KEYS):
        out.pop("image", None)
    out.update(layer)
    return out


def _merge_maps(a: dict[str, Any], b: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge *b* over *a*; profile maps merge with :func:`_apply_layer`."""
    out = dict(a)
    for key, value in b.items():
        current = out.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            out[key] = _apply_layer(current, value)
        else:
            out[key] = value
    return out


def select_profile_name(config: CanonConfig, cwd: Path, requested: str | None = None) -> str:
    """Pick the profile to use.

    Order: *requested*, then the profile whose ``path`` contains *cwd*
    (deepest wins), then the configured fallback, then ``default``.
    """
    if requested:
        return requested

    here = Path(os.path.abspath(cwd))
    best: tuple[int, str] | None = None
    for name in config.profile_names():
        raw_path = config.data[name].get("path")
        if not isinstance(raw_path, str) or not raw_path:
            continue
        root = Path(os.path.abspath(os.path.expanduser(raw_path)))
        if here == root or root in here.parents:
            depth = len(root.parts)
            if best is None or depth > best[0]:
                best = (depth, name)
    if best is not None:
        return best[1]

    return config.fallback_profile or DEFAULT_PROFILE_NAME


def resolve_profile(
    config: CanonConfig,
    cwd: Path,
    *,
    name: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> Profile:
    """Resolve the active :class:`Profile` for *cwd*.

    Args:
        config: Loaded configuration.
        cwd: Directory canon was invoked from.
        name: Explicit profile name (``--profile``).
        overrides: CLI settings (``image``, ``arch``, ``user``, ``group``,
            ``ssh``, ``netrc``); ``None`` values are ignored.

    Raises:
        ProfileNotFound: A profile was named but is not defined.
        ConfigError: A setting has an invalid value.

    """
    profile_name = select_profile_name(config, cwd, name)
    section = config.data.get(profile_name)
    if profile_name in _RESERVED_KEYS or (
        section is None and profile_name != DEFAULT_PROFILE_NAME
    ):
        raise ProfileNotFound(profile_name)
    if section is not None and not isinstance(section, dict):
        msg = f"Profile {profile_name!r} must be a YAML map"
        raise ConfigError(msg)

    settings = _apply_layer(_builtin_settings(), config.defaults)
    settings = _apply_layer(settings, section or {})
    cli = {k: v for k, v in (overrides or {}).items() if v is not None}
    settings = _apply_layer(settings, cli)
    return build_profile(profile_name, settings)


def all_profiles(config: CanonConfig) -> list[Profile]:
    """Build every named profile with ``defaults`` applied.

    The built-in default images are left out, so profiles that configure no
    image of their own have nothing to update.
    """
    base = _builtin_settings()
    for key in ("image", *_ARCH_IMAGE_KEYS):
        base[key] = ""
    profiles = []
    for name in config.profile_names():
        settings = _apply_layer(base, config.defaults)
        settings = _apply_layer(settings, config.data[name])
        profiles.append(build_profile(name, settings))
    return profiles


def _builtin_settings() -> dict[str, Any]:
    """The built-in profile as a settings map."""
    builtin = Profile()
    return {f.name: getattr(builtin, f.name) for f in dataclasses.fields(Profile)}


def build_profile(name: str, settings: dict[str, Any]) -> Profile:
    """Build a ``Profile`` from a dict of settings, coercing YAML values."""
    field_names = {f.name for f in dataclasses.fields(Profile)}
    filtered = {k: v for k, v in settings.items() if k in field_names}
    filtered["name"] = name
    # an image key missing here was hidden by a higher layer
    for key in ("image", *_ARCH_IMAGE_KEYS):
        filtered.setdefault(key, "")

    for key in _BOOL_FIELDS & filtered.keys():
        if not isinstance(filtered[key], bool):
            msg = f"Profile {name!r}: {key} must be true or false, got {filtered[key]!r}"
            raise ConfigError(msg)
    for key in _STR_FIELDS & filtered.keys():
        value = filtered[key]
        filtered[key] = "" if value is None else str(value)

    if filtered.get("arch") not in KNOWN_ARCHES:
        msg = f"Profile {name!r}: arch must be one of {', '.join(KNOWN_ARCHES)}"
        raise ConfigError(msg)

    try:
        filtered["update_interval"] = parse_duration(filtered.get("update_interval", 0))
    except ValueError as exc:
        msg = f"Profile {name!r}: {exc}"
        raise ConfigError(msg) from exc

    filtered["minimum_date"] = _coerce_date(name, filtered.get("minimum_date"))

    raw_path = filtered.get("path") or "/"
    filtered["path"] = os.path.abspath(os.path.expanduser(str(raw_path)))

    return Profile(**filtered)


def _coerce_date(name: str, value: object) -> datetime.datetime | None:
    """Turn a YAML timestamp, date or ISO string into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.timezone.utc)
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day, tzinfo=datetime.timezone.utc)
    if isinstance(value, str):
        try:
            return parse_iso_timestamp(value)
        except ValueError as exc:
            msg = f"Profile {name!r}: invalid minimum_date {value!r}"
            raise ConfigError(msg) from exc
    msg = f"Profile {name!r}: invalid minimum_date {value!r}"
    raise ConfigError(msg)
