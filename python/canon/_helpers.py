# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Parsing and formatting utilities for timestamps and durations."""

from __future__ import annotations

import datetime
import re

_DURATION_UNITS: dict[str, float] = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_iso_timestamp(s: str) -> datetime.datetime:
    """Parse an ISO 8601 timestamp to an aware datetime.

    Handles both ``Z`` suffix and ``+00:00`` offset, and truncates
    sub-microsecond precision that engines and hand-written configs emit.
    A timestamp without an offset is taken as UTC.
    """
    s = s.strip().replace("Z", "+00:00")
    # "2024-01-15T10:30:00.123456789+00:00" -> "...123456+00:00"
    s = re.sub(r"(\.\d{6})\d+", r"\1", s)
    parsed = datetime.datetime.fromisoformat(s)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def parse_duration(value: object) -> datetime.timedelta:
    """Parse a duration from a Go-style string (``24h0m0s``, ``90m``) or seconds.

    Raises:
        ValueError: If *value* is not a recognisable duration.

    """
    if isinstance(value, datetime.timedelta):
        return value
    if isinstance(value, bool):
        msg = f"invalid duration: {value!r}"
        raise ValueError(msg)
    if isinstance(value, (int, float)):
        return datetime.timedelta(seconds=value)
    if not isinstance(value, str):
        msg = f"invalid duration: {value!r}"
        raise ValueError(msg)

    text = value.strip()
    sign = 1.0
    if text[:1] in ("+", "-"):
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return datetime.timedelta(0)
    if re.fullmatch(r"\d+(?:\.\d+)?", text):
        return datetime.timedelta(seconds=sign * float(text))

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        msg = f"invalid duration: {value!r}"
        raise ValueError(msg)
    return datetime.timedelta(seconds=sign * total)


def format_duration(delta: datetime.timedelta) -> str:
    """Format a timedelta the way Go prints durations (``24h0m0s``, ``1h30m0s``)."""
    total = delta.total_seconds()
    if total == 0:
        return "0s"
    sign = "-" if total < 0 else ""
    total = abs(total)
    if total < 1:
        millis = f"{total * 1000:.6f}".rstrip("0").rstrip(".")
        return f"{sign}{millis}ms"

    hours, rem = divmod(total, 3600)
    minutes, seconds = divmod(rem, 60)
    secs = f"{seconds:.6f}".rstrip("0").rstrip(".")
    if hours:
        return f"{sign}{int(hours)}h{int(minutes)}m{secs}s"
    if minutes:
        return f"{sign}{int(minutes)}m{secs}s"
    return f"{sign}{secs}s"


def short_id(container_id: str) -> str:
    """Return the 12-character short form of an engine ID."""
    return container_id[:12]
