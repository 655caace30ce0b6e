# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Fire-and-forget session history on disk.

All I/O is synchronous filesystem writes, done once per session.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import datetime

HISTORY_PATH = Path("~/.cache/canon/history.jsonl")


class HistoryLogger:
    """Appends one JSONL line per finished session to ``history.jsonl``."""

    def __init__(self, path: Path | None = None, *, enabled: bool = True) -> None:
        self._history_path = (path or HISTORY_PATH).expanduser()
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        """Whether logging is active."""
        return self._enabled

    @property
    def path(self) -> Path:
        """Location of the history file."""
        return self._history_path

    def log_session(  # noqa: PLR0913
        self,
        *,
        kind: str,
        profile: str,
        container: str,
        command: list[str],
        exit_code: int | None,
        started_at: datetime.datetime,
        duration_s: float,
        error: str | None = None,
    ) -> None:
        """Record a finished ``shell`` or ``run`` session."""
        entry: dict[str, object] = {
            "type": kind,
            "profile": profile,
            "container": container,
            "command": command,
            "exit_code": exit_code,
            "duration_s": round(duration_s, 3),
            "timestamp": started_at.isoformat(),
        }
        if error is not None:
            entry["error"] = error
        self.append_history(entry)

    def append_history(self, entry: dict[str, object]) -> None:
        """Append one JSONL line to ``history.jsonl``.

        Write failures are ignored; history must never fail a session.
        """
        if not self._enabled:
            return
        try:
            self._history_path.parent.mkdir(parents=True, exist_ok=True)
            with self._history_path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError:
            return

