# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""CLI command implementations."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import TYPE_CHECKING

import click

from canon.cli._output import (
    format_container_list,
    format_error,
    format_profile,
    get_console,
    make_callbacks,
    print_warning,
)
from canon.errors import CanonError, EngineNotRunning

if TYPE_CHECKING:
    from canon._config import CanonConfig
    from canon.cli.main import CliContext
    from canon.profiles import Profile


def _get_ctx(ctx: click.Context) -> CliContext:
    """Extract the CliContext from Click's context object."""
    return ctx.obj  # type: ignore[no-any-return]


def _load(cli_ctx: CliContext) -> tuple[CanonConfig, Profile]:
    """Load the config files and resolve the active profile."""
    from canon._config import load_config, resolve_profile  # noqa: PLC0415

    cwd = Path.cwd()
    config_path = Path(cli_ctx.config_path) if cli_ctx.config_path else None
    config = load_config(cwd, config_path)
    profile = resolve_profile(config, cwd, name=cli_ctx.profile, overrides=cli_ctx.overrides)
    return config, profile


def _socket(cli_ctx: CliContext, config: CanonConfig) -> str:
    """Engine socket from ``--socket``/``CANON_SOCKET``, the config, or detection."""
    from canon._socket_client import detect_socket  # noqa: PLC0415

    socket_path = cli_ctx.socket or config.socket or detect_socket()
    if socket_path is None:
        raise EngineNotRunning
    return socket_path


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


async def _auto_update(socket_path: str, profile: Profile) -> None:
    """Pull the profile's images if they are due; failures only warn."""
    from canon.update import check_update  # noqa: PLC0415

    if profile.persistent and not profile.update_persistent:
        return
    try:
        await check_update(socket_path, [profile], console=get_console())
    except CanonError as exc:
        print_warning(f"image update check failed: {exc}")


def _run_session(ctx: click.Context, command: list[str] | None, kind: str) -> None:
    """Shared body of ``shell`` and ``run``; exits with the remote exit code."""
    from canon._logger import HistoryLogger  # noqa: PLC0415
    from canon.orchestrator import working_dir  # noqa: PLC0415
    from canon.session import run_session  # noqa: PLC0415
    from canon.update import ImageProvider  # noqa: PLC0415

    cli_ctx = _get_ctx(ctx)
    try:
        config, profile = _load(cli_ctx)
        working_dir(profile, os.getcwd())
        socket_path = _socket(cli_ctx, config)

        async def _session() -> int:
            await _auto_update(socket_path, profile)
            return await run_session(
                profile,
                command,
                socket_path=socket_path,
                provider=ImageProvider(socket_path, get_console()),
                callbacks=make_callbacks(verbose=cli_ctx.verbose),
                history=HistoryLogger(enabled=config.history),
                kind=kind,
            )

        exit_code = asyncio.run(_session())
    except CanonError as exc:
        format_error(exc)
        raise SystemExit(1) from exc
    raise SystemExit(exit_code)


@click.command("shell")
@click.pass_context
def shell_cmd(ctx: click.Context) -> None:
    """Open an interactive login shell (the default)."""
    _run_session(ctx, None, "shell")


@click.command(
    "run",
    add_help_option=False,
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def run_cmd(ctx: click.Context, command: tuple[str, ...]) -> None:
    """Run COMMAND in the environment."""
    _run_session(ctx, list(command), "run")


# ---------------------------------------------------------------------------
# Configuration and images
# ---------------------------------------------------------------------------


@click.command("config")
@click.pass_context
def config_cmd(ctx: click.Context) -> None:
    """Show the resolved profile."""
    cli_ctx = _get_ctx(ctx)
    try:
        _config, profile = _load(cli_ctx)
    except CanonError as exc:
        format_error(exc)
        raise SystemExit(1) from exc
    format_profile(profile)


@click.command("update")
@click.option("--all", "-a", "update_all", is_flag=True, help="Update images of all profiles.")
@click.pass_context
def update_cmd(ctx: click.Context, *, update_all: bool) -> None:
    """Pull the current profile's images now."""
    from canon._config import all_profiles  # noqa: PLC0415
    from canon.update import check_update  # noqa: PLC0415

    cli_ctx = _get_ctx(ctx)
    try:
        config, profile = _load(cli_ctx)
        socket_path = _socket(cli_ctx, config)
        profiles = [profile, *all_profiles(config)] if update_all else [profile]
        asyncio.run(check_update(socket_path, profiles, force=True, console=get_console()))
    except CanonError as exc:
        format_error(exc)
        raise SystemExit(1) from exc


# ---------------------------------------------------------------------------
# Container management
# ---------------------------------------------------------------------------


@click.command("list")
@click.pass_context
def list_cmd(ctx: click.Context) -> None:
    """List canon containers."""
    from canon._config import load_config  # noqa: PLC0415
    from canon.registry import list_managed  # noqa: PLC0415

    cli_ctx = _get_ctx(ctx)
    config_path = Path(cli_ctx.config_path) if cli_ctx.config_path else None
    try:
        config = load_config(Path.cwd(), config_path)
        socket_path = _socket(cli_ctx, config)
        items = asyncio.run(list_managed(socket_path))
    except CanonError as exc:
        format_error(exc)
        raise SystemExit(1) from exc
    format_container_list(items)


def _stop(ctx: click.Context, *, all_: bool, remove: bool) -> None:
    from canon.registry import stop_or_terminate  # noqa: PLC0415

    cli_ctx = _get_ctx(ctx)
    try:
        config, profile = _load(cli_ctx)
        socket_path = _socket(cli_ctx, config)
        asyncio.run(
            stop_or_terminate(
                socket_path,
                profile.key,
                all_=all_,
                remove=remove,
                callbacks=make_callbacks(verbose=cli_ctx.verbose),
            )
        )
    except CanonError as exc:
        format_error(exc)
        raise SystemExit(1) from exc


@click.command("stop")
@click.option("--all", "-a", "all_", is_flag=True, help="Stop every canon container.")
@click.pass_context
def stop_cmd(ctx: click.Context, *, all_: bool) -> None:
    """Stop the current profile's container."""
    _stop(ctx, all_=all_, remove=False)


@click.command("terminate")
@click.option("--all", "-a", "all_", is_flag=True, help="Terminate every canon container.")
@click.pass_context
def terminate_cmd(ctx: click.Context, *, all_: bool) -> None:
    """Stop and remove the current profile's container."""
    _stop(ctx, all_=all_, remove=True)
