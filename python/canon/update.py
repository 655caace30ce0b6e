# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Image update bookkeeping.

canon re-pulls profile images periodically.  The time of each pull is kept
in ``~/.cache/canon/update-data.yaml`` keyed by ``image|platform``; an image
is due again once the profile's ``update_interval`` has passed or its
``minimum_date`` is newer than the last pull.

Every read-modify-write of the cache happens under an exclusive,
non-blocking ``flock`` on ``~/.cache/canon/update.lock``, so concurrent
canon processes fail fast instead of racing.
"""

from __future__ import annotations

import contextlib
import dataclasses
import datetime
import fcntl
import os
from pathlib import Path
from typing import TYPE_CHECKING

import yaml
from rich.console import Console

from canon import _socket_client as sc
from canon._helpers import parse_iso_timestamp
from canon.errors import UpdateError, UpdateLockHeld

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from typing_extensions import Self

    from canon.profiles import Profile

CACHE_DIR = Path("~/.cache/canon")
CHECK_DATA_PATH = CACHE_DIR / "update-data.yaml"
LOCK_PATH = CACHE_DIR / "update.lock"


@dataclasses.dataclass(frozen=True)
class ImageDef:
    """An image reference pinned to a platform."""

    image: str
    platform: str

    @property
    def key(self) -> str:
        """Cache key: ``image|platform``."""
        return f"{self.image}|{self.platform}"

    @classmethod
    def from_key(cls, key: str) -> Self:
        """Parse an ``image|platform`` cache key."""
        parts = key.split("|")
        if len(parts) != 2:  # noqa: PLR2004
            msg = f"{key!r} did not split into image and platform"
            raise UpdateError(msg)
        return cls(image=parts[0], platform=parts[1])


CheckData = dict[ImageDef, datetime.datetime]


def _now() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.timezone.utc)


def read_check_data(path: Path | None = None) -> CheckData:
    """Load the last-pull times; a missing file is an empty cache."""
    path = (path or CHECK_DATA_PATH).expanduser()
    try:
        raw = yaml.safe_load(path.read_text())
    except FileNotFoundError:
        return {}
    except (OSError, yaml.YAMLError) as exc:
        msg = f"Cannot read update cache {path}: {exc}"
        raise UpdateError(msg) from exc
    if not raw:
        return {}
    if not isinstance(raw, dict):
        msg = f"Update cache {path} must be a YAML map"
        raise UpdateError(msg)

    data: CheckData = {}
    for key, value in raw.items():
        if isinstance(value, datetime.datetime):
            stamp = value if value.tzinfo else value.replace(tzinfo=datetime.timezone.utc)
        else:
            try:
                stamp = parse_iso_timestamp(str(value))
            except ValueError as exc:
                msg = f"Update cache {path}: bad time for {key!r}"
                raise UpdateError(msg) from exc
        data[ImageDef.from_key(str(key))] = stamp
    return data


def write_check_data(data: CheckData, path: Path | None = None) -> None:
    """Persist the last-pull times."""
    path = (path or CHECK_DATA_PATH).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    serialised = {d.key: stamp.isoformat() for d, stamp in sorted(data.items(), key=_sort_key)}
    path.write_text(yaml.safe_dump(serialised, sort_keys=True))


def _sort_key(item: tuple[ImageDef, datetime.datetime]) -> str:
    return item[0].key


@contextlib.contextmanager
def update_lock(path: Path | None = None) -> Iterator[Path]:
    """Hold the exclusive update lock for the duration of the block.

    The lock file records the holder's PID while held.  On release it is
    emptied and left in place.

    Raises:
        UpdateLockHeld: Another process holds the lock.

    """
    path = (path or LOCK_PATH).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = path.open("a+")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as exc:
        handle.close()
        raise UpdateLockHeld(str(path)) from exc
    try:
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}")
        handle.flush()
        yield path
    finally:
        handle.truncate(0)
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        handle.close()


def candidate_images(profile: Profile) -> list[ImageDef]:
    """Images a profile depends on.

    A profile naming both arch-specific images depends on both, so switching
    ``--arch`` never finds a stale image; otherwise only the resolved image
    for the profile's arch counts.
    """
    if not profile.image and profile.image_amd64 and profile.image_arm64:
        return [
            ImageDef(profile.image_amd64, "linux/amd64"),
            ImageDef(profile.image_arm64, "linux/arm64"),
        ]
    if profile.resolved_image:
        return [ImageDef(profile.resolved_image, profile.platform)]
    return []


def images_due(
    profile: Profile,
    check_data: CheckData,
    now: datetime.datetime | None = None,
    *,
    force: bool = False,
) -> list[ImageDef]:
    """Return the profile's images that need pulling.

    An image is due when it was never pulled, its update interval has
    elapsed, the profile's ``minimum_date`` is after the last pull, or
    *force* is set.
    """
    now = now or _now()
    due = []
    for image in candidate_images(profile):
        last = check_data.get(image)
        if (
            force
            or last is None
            or now > last + profile.update_interval
            or (profile.minimum_date is not None and profile.minimum_date > last)
        ):
            due.append(image)
    return due


async def pull_images(
    socket_path: str,
    images: Iterable[ImageDef],
    console: Console | None = None,
    *,
    lock_path: Path | None = None,
    data_path: Path | None = None,
) -> None:
    """Pull each image under the update lock, recording the pull times."""
    console = console or Console()
    with update_lock(lock_path):
        check_data = read_check_data(data_path)
        for image in images:
            await _pull_one(socket_path, image, console)
            check_data[image] = _now()
        write_check_data(check_data, data_path)


async def _pull_one(socket_path: str, image: ImageDef, console: Console) -> None:
    """Pull one image, showing engine progress as a live status line."""
    console.print(f"Pulling {image.image} ({image.platform})")
    with console.status(f"Pulling {image.image}") as status:
        async for message in sc.pull_image(socket_path, image.image, image.platform):
            line = _progress_line(message)
            if not line:
                continue
            if message.get("progressDetail"):
                status.update(line)
            else:
                console.print(line, highlight=False)


def _progress_line(message: dict[str, object]) -> str:
    """Render one engine pull message the way ``docker pull`` does."""
    parts = [str(message[k]) for k in ("id", "status", "progress") if message.get(k)]
    if message.get("id"):
        parts[0] = f"{parts[0]}:"
    return " ".join(parts)


async def check_update(  # noqa: PLR0913
    socket_path: str,
    profiles: Iterable[Profile],
    *,
    force: bool = False,
    console: Console | None = None,
    lock_path: Path | None = None,
    data_path: Path | None = None,
) -> list[ImageDef]:
    """Pull whatever images of *profiles* are due.

    Returns:
        The images that were pulled, deduplicated, in first-seen order.

    """
    console = console or Console()
    with update_lock(lock_path):
        check_data = read_check_data(data_path)

    queued: list[ImageDef] = []
    now = _now()
    for profile in profiles:
        for image in images_due(profile, check_data, now, force=force):
            if image not in queued:
                queued.append(image)

    if not queued:
        return []
    for image in queued:
        console.print(f"queuing update: {image.key}", highlight=False)
    await pull_images(socket_path, queued, console, lock_path=lock_path, data_path=data_path)
    return queued


class ImageProvider:
    """Pulls images on demand for the orchestrator, updating the cache."""

    def __init__(
        self,
        socket_path: str,
        console: Console | None = None,
        *,
        lock_path: Path | None = None,
        data_path: Path | None = None,
    ) -> None:
        self._socket_path = socket_path
        self._console = console or Console()
        self._lock_path = lock_path
        self._data_path = data_path

    async def pull(self, image: str, platform: str) -> None:
        """Pull *image* for *platform*, returning once it is available locally."""
        await pull_images(
            self._socket_path,
            [ImageDef(image, platform)],
            self._console,
            lock_path=self._lock_path,
            data_path=self._data_path,
        )
