# SPDX-License-Identifier: BSD-2-Clause
# Copyright (c) deftio llc

"""Stream demultiplexing for Docker/Podman attach output.

When a container has no TTY, the engine's attach endpoint returns a
multiplexed byte stream.  Each frame has an 8-byte header:
  - byte 0: stream type (0 = stdin, 1 = stdout, 2 = stderr)
  - bytes 1-3: padding (zero)
  - bytes 4-7: payload length (big-endian uint32)

This module parses that protocol into ``(stream_type, payload)`` frames and
reassembles the payloads into text lines for the readiness scan.
"""

from __future__ import annotations

import struct
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import asyncio
    from collections.abc import AsyncGenerator

STREAM_STDIN = 0
STREAM_STDOUT = 1
STREAM_STDERR = 2
HEADER_SIZE = 8
_HEADER_FORMAT = ">BxxxI"  # 1 byte type, 3 padding, 4 byte length


def parse_stream_header(header: bytes) -> tuple[int, int]:
    """Parse an 8-byte Docker stream frame header.

    Returns:
        Tuple of (stream_type, payload_length).

    """
    stream_type, payload_length = struct.unpack(_HEADER_FORMAT, header)
    return stream_type, payload_length


async def demux_stream_iter(
    reader: asyncio.StreamReader,
) -> AsyncGenerator[tuple[int, bytes], None]:
    """Yield ``(stream_type, payload)`` frames until EOF.

    A truncated trailing frame is dropped.  Empty frames are skipped.
    """
    while True:
        header = await _read_exact(reader, HEADER_SIZE)
        if not header:
            return
        stream_type, payload_length = parse_stream_header(header)
        if payload_length == 0:
            continue
        payload = await _read_exact(reader, payload_length)
        if not payload:
            return
        yield stream_type, payload


async def iter_lines(
    frames: AsyncGenerator[tuple[int, bytes], None],
) -> AsyncGenerator[str, None]:
    """Reassemble stdout/stderr frame payloads into lines.

    Lines are yielded without their trailing newline as soon as they are
    complete, so a consumer that stops iterating never pulls frames beyond
    the one holding the line it stopped on.  A final unterminated line is
    yielded at EOF.
    """
    buf = ""
    async for stream_type, payload in frames:
        if stream_type not in (STREAM_STDOUT, STREAM_STDERR):
            continue
        buf += payload.decode("utf-8", errors="replace")
        while "\n" in buf:
            line, buf = buf.split("\n", 1)
            yield line.rstrip("\r")
    if buf:
        yield buf.rstrip("\r")


async def iter_tty_lines(reader: asyncio.StreamReader) -> AsyncGenerator[str, None]:
    """Lines of an unframed TTY stream, without their ``\\r\\n``.

    Bytes after the last line yielded stay buffered in *reader*.
    """
    while True:
        raw = await reader.readline()
        if not raw:
            return
        yield raw.decode("utf-8", errors="replace").rstrip("\r\n")


async def _read_exact(reader: asyncio.StreamReader, n: int) -> bytes:
    """Read exactly n bytes, returning empty bytes on EOF."""
    data = b""
    while len(data) < n:
        chunk = await reader.read(n - len(data))
        if not chunk:
            return b""
        data += chunk
    return data
