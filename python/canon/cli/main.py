# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""CLI entry point for canon.

``canon`` with no subcommand opens a shell.  Anything that is not a known
subcommand is run as a command, as is everything after ``--``::

    canon                  # interactive login shell
    canon make -j8         # same as: canon run make -j8
    canon -- list          # runs "list" in the container
"""

from __future__ import annotations

import dataclasses
from typing import Any

import click

from canon import __version__


@dataclasses.dataclass
class CliContext:
    """Shared state passed through Click's context object."""

    config_path: str | None = None
    profile: str | None = None
    overrides: dict[str, Any] = dataclasses.field(default_factory=dict)
    socket: str | None = None
    verbose: bool = False


class _CanonGroup(click.Group):
    """Command group that treats unknown words and ``--`` as ``run``."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        if "--" in args:
            split = args.index("--")
            if self._first_word(ctx, args[:split]) is None:
                args = [*args[:split], "run", *args[split:]]
        return super().parse_args(ctx, args)

    def _first_word(self, ctx: click.Context, args: list[str]) -> str | None:
        """First argument that is neither a group option nor an option's value."""
        takes_value = {
            opt
            for param in self.get_params(ctx)
            if isinstance(param, click.Option) and not param.is_flag
            for opt in param.opts
        }
        skip = False
        for arg in args:
            if skip:
                skip = False
            elif not arg.startswith("-"):
                return arg
            else:
                skip = arg in takes_value
        return None

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        if args and args[0] not in self.commands and not args[0].startswith("-"):
            args = ["run", *args]
        return super().resolve_command(ctx, args)


@click.group(cls=_CanonGroup, invoke_without_command=True)
@click.option("--config", "config_path", default=None, help="User config file.")
@click.option("--profile", default=None, help="Profile name.")
@click.option("--image", default=None, help="Image to run (overrides the profile).")
@click.option(
    "--arch",
    type=click.Choice(["amd64", "arm64"]),
    default=None,
    help="Architecture to run.",
)
@click.option("--user", default=None, help="User to map to inside the container.")
@click.option("--group", default=None, help="Group to map to inside the container.")
@click.option(
    "--ssh/--no-ssh",
    default=None,
    help="Mount ~/.ssh (read-only) and forward SSH_AUTH_SOCK.",
)
@click.option("--netrc/--no-netrc", default=None, help="Mount ~/.netrc (read-only).")
@click.option(
    "--socket",
    envvar="CANON_SOCKET",
    default=None,
    help="Path to container engine socket.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.version_option(version=__version__, prog_name="canon")
@click.pass_context
def cli(  # noqa: PLR0913
    ctx: click.Context,
    config_path: str | None,
    profile: str | None,
    image: str | None,
    arch: str | None,
    user: str | None,
    group: str | None,
    ssh: bool | None,  # noqa: FBT001
    netrc: bool | None,  # noqa: FBT001
    socket: str | None,
    *,
    verbose: bool,
) -> None:
    """Run commands in containerized development environments."""
    ctx.ensure_object(dict)
    ctx.obj = CliContext(
        config_path=config_path,
        profile=profile,
        overrides={
            "image": image,
            "arch": arch,
            "user": user,
            "group": group,
            "ssh": ssh,
            "netrc": netrc,
        },
        socket=socket,
        verbose=verbose,
    )
    if ctx.invoked_subcommand is None:
        ctx.invoke(shell_cmd)


# --- Register commands ---

from canon.cli._commands import (  # noqa: E402
    config_cmd,
    list_cmd,
    run_cmd,
    shell_cmd,
    stop_cmd,
    terminate_cmd,
    update_cmd,
)

cli.add_command(shell_cmd)
cli.add_command(run_cmd)
cli.add_command(config_cmd)
cli.add_command(update_cmd)
cli.add_command(list_cmd)
cli.add_command(stop_cmd)
cli.add_command(terminate_cmd)


def main() -> None:
    """Console-script entry point."""
    cli()
