"""Tests for listing, stopping and looking up canon containers."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, call, patch

import pytest
from canon._callbacks import SessionCallbacks
from canon._labels import build_labels
from canon.errors import (
    AmbiguousContainers,
    ContainerNotFound,
    ContainerNotRunning,
    MultiContainerError,
    SocketCommunicationError,
)
from canon.profiles import Profile
from canon.registry import (
    check_image_drift,
    container_name,
    display_state,
    find_persistent,
    list_managed,
    stop_or_terminate,
)


def _container(cid: str, profile: Profile, state: str = "running") -> dict[str, Any]:
    return {
        "Id": cid,
        "Names": [f"/canon-{profile.name}"],
        "State": state,
        "Image": profile.resolved_image,
        "Labels": build_labels(profile),
    }


def test_container_name() -> None:
    assert container_name({"Names": ["/canon-proj"], "Id": "x"}) == "canon-proj"
    assert container_name({"Names": [], "Id": "0123456789abcdef"}) == "0123456789ab"


@pytest.mark.parametrize(
    ("engine_state", "container_type", "shown"),
    [
        ("running", "one-shot", "oneshot"),
        ("running", "persistent", "running"),
        ("exited", "persistent", "stopped"),
        ("exited", "one-shot", "stopped"),
        ("paused", "persistent", "paused"),
    ],
)
def test_display_state(engine_state: str, container_type: str, shown: str) -> None:
    assert display_state(engine_state, container_type) == shown


async def test_list_managed_maps_states() -> None:
    one_shot = Profile(name="a", arch="amd64")
    persistent = Profile(name="b", arch="arm64", persistent=True)
    containers = [
        _container("id-a", one_shot),
        _container("id-b", persistent, state="exited"),
        {"Id": "id-c", "Names": ["/junk"], "State": "running", "Image": "x",
         "Labels": {"com.viam.canon.profile": "c/amd64", "com.viam.canon.type": "weird"}},
    ]
    with patch(
        "canon.registry.sc.list_containers", new_callable=AsyncMock, return_value=containers
    ) as mock_list:
        items = await list_managed("/s.sock")

    mock_list.assert_awaited_once_with("/s.sock", label_filters=["com.viam.canon.profile"])
    assert [(i.name, i.state, i.profile, i.type) for i in items] == [
        ("canon-a", "oneshot", "a/amd64", "one-shot"),
        ("canon-b", "stopped", "b/arm64", "persistent"),
        ("junk", "invalid", "c/amd64", ""),
    ]


async def test_stop_ambiguous_touches_nothing() -> None:
    profile = Profile(name="a", arch="amd64")
    containers = [_container("1", profile), _container("2", profile)]
    with (
        patch(
            "canon.registry.sc.list_containers", new_callable=AsyncMock, return_value=containers
        ),
        patch("canon.registry.sc.stop_container", new_callable=AsyncMock) as mock_stop,
        pytest.raises(AmbiguousContainers, match="--all"),
    ):
        await stop_or_terminate("/s.sock", profile.key)
    mock_stop.assert_not_awaited()


async def test_stop_single_container() -> None:
    profile = Profile(name="a", arch="amd64")
    seen: list[str] = []
    callbacks = SessionCallbacks()
    callbacks.on_status(seen.append)
    with (
        patch(
            "canon.registry.sc.list_containers",
            new_callable=AsyncMock,
            return_value=[_container("1", profile)],
        ) as mock_list,
        patch("canon.registry.sc.stop_container", new_callable=AsyncMock) as mock_stop,
        patch("canon.registry.sc.remove_container", new_callable=AsyncMock) as mock_remove,
    ):
        done = await stop_or_terminate("/s.sock", profile.key, callbacks=callbacks)

    assert done == ["a/amd64"]
    assert seen == ["stopping a/amd64"]
    mock_list.assert_awaited_once_with(
        "/s.sock", label_filters=["com.viam.canon.profile=a/amd64"]
    )
    mock_stop.assert_awaited_once_with("/s.sock", "1", timeout=10)
    mock_remove.assert_not_awaited()


async def test_terminate_all_continues_past_failures() -> None:
    a = Profile(name="a", arch="amd64")
    b = Profile(name="b", arch="amd64")
    c = Profile(name="c", arch="amd64")
    containers = [_container("1", a), _container("2", b), _container("3", c)]

    async def stop(_socket: str, cid: str, timeout: int = 10) -> None:  # noqa: ARG001
        if cid == "2":
            msg = "HTTP 500: boom"
            raise SocketCommunicationError(msg)
        if cid == "3":
            raise ContainerNotFound(cid)

    with (
        patch(
            "canon.registry.sc.list_containers", new_callable=AsyncMock, return_value=containers
        ) as mock_list,
        patch("canon.registry.sc.stop_container", side_effect=stop),
        patch("canon.registry.sc.remove_container", new_callable=AsyncMock) as mock_remove,
        pytest.raises(MultiContainerError) as excinfo,
    ):
        await stop_or_terminate("/s.sock", a.key, all_=True, remove=True)

    mock_list.assert_awaited_once_with("/s.sock", label_filters=["com.viam.canon.profile"])
    assert mock_remove.await_args_list == [call("/s.sock", "1", force=True)]
    assert excinfo.value.action == "terminate"
    assert [label for label, _exc in excinfo.value.failures] == ["b/amd64"]


async def test_terminate_tolerates_removal_in_progress() -> None:
    profile = Profile(name="p", arch="amd64")
    with (
        patch(
            "canon.registry.sc.list_containers",
            new_callable=AsyncMock,
            return_value=[_container("abc", profile)],
        ),
        patch("canon.registry.sc.stop_container", new_callable=AsyncMock) as mock_stop,
        patch(
            "canon.registry.sc.remove_container",
            new_callable=AsyncMock,
            side_effect=ContainerNotRunning("abc"),
        ) as mock_remove,
    ):
        done = await stop_or_terminate("/s.sock", profile.key, remove=True)

    assert done == ["p/amd64"]
    mock_stop.assert_awaited_once()
    mock_remove.assert_awaited_once_with("/s.sock", "abc", force=True)


async def test_stop_nothing_to_do() -> None:
    with patch("canon.registry.sc.list_containers", new_callable=AsyncMock, return_value=[]):
        assert await stop_or_terminate("/s.sock", "a/amd64") == []


async def test_find_persistent() -> None:
    profile = Profile(name="p", arch="amd64", persistent=True)
    with patch(
        "canon.registry.sc.list_containers",
        new_callable=AsyncMock,
        return_value=[_container("1", profile)],
    ) as mock_list:
        found = await find_persistent("/s.sock", profile)
    assert found is not None
    assert found["Id"] == "1"
    mock_list.assert_awaited_once_with(
        "/s.sock",
        label_filters=["com.viam.canon.type=persistent", "com.viam.canon.profile=p/amd64"],
    )


async def test_find_persistent_none() -> None:
    profile = Profile(name="p", arch="amd64", persistent=True)
    with patch("canon.registry.sc.list_containers", new_callable=AsyncMock, return_value=[]):
        assert await find_persistent("/s.sock", profile) is None


async def test_find_persistent_ambiguous() -> None:
    profile = Profile(name="p", arch="amd64", persistent=True)
    containers = [_container("1", profile), _container("2", profile)]
    with (
        patch(
            "canon.registry.sc.list_containers", new_callable=AsyncMock, return_value=containers
        ),
        pytest.raises(AmbiguousContainers, match="terminate all"),
    ):
        await find_persistent("/s.sock", profile)


@pytest.mark.parametrize(("image_id", "drifted"), [("sha256:old", False), ("sha256:new", True)])
async def test_check_image_drift(image_id: str, drifted: bool) -> None:  # noqa: FBT001
    with (
        patch(
            "canon.registry.sc.inspect_container",
            new_callable=AsyncMock,
            return_value={"Image": "sha256:old", "Config": {"Image": "img:1"}},
        ),
        patch(
            "canon.registry.sc.inspect_image",
            new_callable=AsyncMock,
            return_value={"Id": image_id},
        ) as mock_image,
    ):
        assert await check_image_drift("/s.sock", "abc") is drifted
    mock_image.assert_awaited_once_with("/s.sock", "img:1")
