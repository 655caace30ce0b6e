"""Tests for end-to-end session orchestration with the engine mocked out."""

from __future__ import annotations

import asyncio
import io
import json
import os
import pathlib
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from canon._callbacks import SessionCallbacks
from canon._logger import HistoryLogger
from canon.bridge import AttachTransport, ExecTransport
from canon.errors import PathOutsideProfile, SessionCancelled
from canon.orchestrator import AcquiredContainer, PrimaryStream
from canon.profiles import Profile
from canon.session import build_exec_spec, run_session, ssh_socket_for

if TYPE_CHECKING:
    from collections.abc import Iterator


@pytest.fixture
def stdin_fd(tmp_path: pathlib.Path) -> Iterator[int]:
    path = tmp_path / "stdin"
    path.write_bytes(b"")
    fd = os.open(path, os.O_RDONLY)
    yield fd
    os.close(fd)


def _one_shot() -> AcquiredContainer:
    return AcquiredContainer("cid1", "canon-proj-0a1b2c3d", created=True, persistent=False)


def _history(tmp_path: pathlib.Path) -> HistoryLogger:
    return HistoryLogger(tmp_path / "history.jsonl")


def _entries(logger: HistoryLogger) -> list[dict[str, object]]:
    return [json.loads(line) for line in logger.path.read_text().splitlines()]


def _provider() -> MagicMock:
    provider = MagicMock()
    provider.pull = AsyncMock()
    return provider


def test_build_exec_spec() -> None:
    profile = Profile(user="dev", group="devs")
    spec = build_exec_spec(profile, ["make", "test"], "/host/src", "/tmp/agent.sock")
    assert spec.command == ("make", "test")
    assert spec.user == "dev:devs"
    assert spec.working_dir == "/host/src"
    assert spec.env == ("SSH_AUTH_SOCK=/tmp/agent.sock",)
    assert spec.tty is True
    assert build_exec_spec(profile, ["true"], "/host", None).env == ()


def test_ssh_socket_for(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("canon.session.sys.platform", "linux")
    monkeypatch.setenv("SSH_AUTH_SOCK", "/tmp/agent.sock")
    assert ssh_socket_for(Profile()) == "/tmp/agent.sock"
    assert ssh_socket_for(Profile(ssh=False)) is None
    monkeypatch.delenv("SSH_AUTH_SOCK")
    assert ssh_socket_for(Profile()) is None


def test_ssh_socket_for_macos(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("canon.session.sys.platform", "darwin")
    assert ssh_socket_for(Profile()) == "/run/host-services/ssh-auth.sock"


async def test_run_session_success(
    tmp_path: pathlib.Path, profile: Profile, stdin_fd: int
) -> None:
    history = _history(tmp_path)
    with (
        patch(
            "canon.session.acquire_container", new_callable=AsyncMock, return_value=_one_shot()
        ) as acquire,
        patch("canon.session.run_interactive", new_callable=AsyncMock, return_value=4) as bridge,
        patch("canon.session.release_container", new_callable=AsyncMock) as release,
        patch("canon.session.check_image_drift", new_callable=AsyncMock) as drift,
    ):
        code = await run_session(
            profile,
            None,
            socket_path="/s.sock",
            provider=_provider(),
            cwd=str(tmp_path / "src"),
            history=history,
            stdin_fd=stdin_fd,
            stdout=io.BytesIO(),
            kind="shell",
        )

    assert code == 4
    acquire.assert_awaited_once()
    assert acquire.call_args.kwargs["command"] == build_exec_spec(
        profile, ["bash", "-l"], "/host/src", ssh_socket_for(profile)
    )
    drift.assert_not_awaited()
    release.assert_awaited_once()
    assert release.call_args.args == ("/s.sock", "cid1")
    assert release.call_args.kwargs["persistent"] is False

    transport = bridge.call_args.args[0]
    assert isinstance(transport, ExecTransport)

    [entry] = _entries(history)
    assert entry["type"] == "shell"
    assert entry["profile"] == "proj/amd64"
    assert entry["container"] == "canon-proj-0a1b2c3d"
    assert entry["command"] == ["bash", "-l"]
    assert entry["exit_code"] == 4
    assert "error" not in entry


async def test_run_session_outside_profile(
    tmp_path: pathlib.Path, profile: Profile, stdin_fd: int
) -> None:
    history = _history(tmp_path)
    with (
        patch("canon.session.acquire_container", new_callable=AsyncMock) as acquire,
        pytest.raises(PathOutsideProfile),
    ):
        await run_session(
            profile,
            ["true"],
            socket_path="/s.sock",
            provider=_provider(),
            cwd="/somewhere/else",
            history=history,
            stdin_fd=stdin_fd,
            stdout=io.BytesIO(),
        )
    acquire.assert_not_awaited()
    assert not history.path.exists()


async def test_run_session_releases_on_error(
    tmp_path: pathlib.Path, profile: Profile, stdin_fd: int
) -> None:
    history = _history(tmp_path)
    with (
        patch(
            "canon.session.acquire_container", new_callable=AsyncMock, return_value=_one_shot()
        ),
        patch(
            "canon.session.run_interactive",
            new_callable=AsyncMock,
            side_effect=SessionCancelled(),
        ),
        patch("canon.session.release_container", new_callable=AsyncMock) as release,
        pytest.raises(SessionCancelled),
    ):
        await run_session(
            profile,
            ["sleep", "100"],
            socket_path="/s.sock",
            provider=_provider(),
            cwd=str(tmp_path),
            history=history,
            stdin_fd=stdin_fd,
            stdout=io.BytesIO(),
        )

    release.assert_awaited_once()
    [entry] = _entries(history)
    assert entry["command"] == ["sleep", "100"]
    assert entry["exit_code"] is None
    assert entry["error"] == "Session cancelled"


async def test_run_session_warns_on_image_drift(
    tmp_path: pathlib.Path, stdin_fd: int
) -> None:
    profile = Profile(name="proj", arch="amd64", path=str(tmp_path), persistent=True)
    reused = AcquiredContainer("pid1", "canon-proj", created=False, persistent=True)
    warnings: list[str] = []
    callbacks = SessionCallbacks()
    callbacks.on_warning(warnings.append)

    with (
        patch("canon.session.acquire_container", new_callable=AsyncMock, return_value=reused),
        patch("canon.session.check_image_drift", new_callable=AsyncMock, return_value=True),
        patch("canon.session.run_interactive", new_callable=AsyncMock, return_value=0),
        patch("canon.orchestrator.sc.stop_container", new_callable=AsyncMock) as stop,
    ):
        code = await run_session(
            profile,
            ["true"],
            socket_path="/s.sock",
            provider=_provider(),
            cwd=str(tmp_path),
            callbacks=callbacks,
            stdin_fd=stdin_fd,
            stdout=io.BytesIO(),
        )

    assert code == 0
    assert len(warnings) == 1
    assert "canon terminate" in warnings[0]
    stop.assert_not_awaited()


async def test_run_session_attaches_to_primary_process(
    tmp_path: pathlib.Path, profile: Profile, stdin_fd: int
) -> None:
    writer = MagicMock()
    writer.wait_closed = AsyncMock()
    exit_status: asyncio.Future[int] = asyncio.get_running_loop().create_future()
    primary = PrimaryStream(asyncio.StreamReader(), writer, exit_status)
    acquired = AcquiredContainer(
        "cid1", "canon-proj-0a1b2c3d", created=True, persistent=False, primary=primary
    )
    with (
        patch("canon.session.acquire_container", new_callable=AsyncMock, return_value=acquired),
        patch(
            "canon.session.run_interactive",
            new_callable=AsyncMock,
            side_effect=SessionCancelled(),
        ) as bridge,
        patch("canon.session.release_container", new_callable=AsyncMock) as release,
        pytest.raises(SessionCancelled),
    ):
        await run_session(
            profile,
            ["make"],
            socket_path="/s.sock",
            provider=_provider(),
            cwd=str(tmp_path),
            stdin_fd=stdin_fd,
            stdout=io.BytesIO(),
        )

    assert isinstance(bridge.call_args.args[0], AttachTransport)
    writer.close.assert_called()
    assert exit_status.cancelled()
    release.assert_awaited_once()
