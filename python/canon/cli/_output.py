# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Rich output formatters for the CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from canon._callbacks import SessionCallbacks

if TYPE_CHECKING:
    from canon.errors import CanonError
    from canon.profiles import Profile
    from canon.types import ContainerSummary

_console = Console()
_err_console = Console(stderr=True)

_STATE_STYLES = {
    "running": "green",
    "oneshot": "cyan",
    "stopped": "yellow",
    "invalid": "red",
}


def get_console() -> Console:
    """The stdout console, shared with pull progress output."""
    return _console


def format_container_list(items: list[ContainerSummary]) -> None:
    """Print managed containers as a rich table."""
    if not items:
        _console.print("No canon containers found.")
        return

    table = Table(box=None, pad_edge=False)
    table.add_column("State")
    table.add_column("Profile/Arch", style="cyan")
    table.add_column("Image")
    table.add_column("Container ID", style="dim")

    for item in items:
        style = _STATE_STYLES.get(item.state, "")
        state = f"[{style}]{item.state}[/{style}]" if style else escape(item.state)
        table.add_row(state, escape(item.profile), escape(item.image), item.container_id)

    _console.print(table)


def format_profile(profile: Profile) -> None:
    """Print the resolved profile as YAML."""
    _console.print("Profile:", style="bold")
    _console.print(profile.display(), highlight=False, markup=False)


def format_error(err: CanonError) -> None:
    """Print an error as a single line on stderr."""
    _err_console.print(f"[red]Error:[/red] {escape(str(err))}", highlight=False)


def print_status(msg: str) -> None:
    """Print a progress message."""
    _console.print(escape(msg), highlight=False)


def print_warning(msg: str) -> None:
    """Print a warning on stderr."""
    _err_console.print(f"[yellow]WARNING:[/yellow] {escape(msg)}", highlight=False)


def print_debug(msg: str) -> None:
    """Print a diagnostic message on stderr."""
    _err_console.print(f"[dim]{escape(msg)}[/dim]", highlight=False)


def print_output(line: str) -> None:
    """Echo a line of setup-script output verbatim."""
    _console.print(line, highlight=False, markup=False)


def make_callbacks(*, verbose: bool = False) -> SessionCallbacks:
    """Session callbacks wired to the CLI consoles."""
    callbacks = SessionCallbacks()
    callbacks.on_output(print_output)
    callbacks.on_status(print_status)
    callbacks.on_warning(print_warning)
    if verbose:
        callbacks.on_debug(print_debug)
    return callbacks
