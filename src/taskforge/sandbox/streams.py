"""Docker attach/exec stream framing."""

from __future__ import annotations

import struct

_HEADER_SIZE = 8
_STDERR = 2


def demultiplex_stream(data: bytes) -> tuple[str, str]:
    """Split a multiplexed exec stream into ``(stdout, stderr)``.

    Each frame is an 8-byte header (stream type byte, three padding bytes,
    big-endian uint32 payload length) followed by the payload. Type 2 is
    stderr; anything else is treated as stdout. A frame whose payload is cut
    short keeps the bytes that did arrive; leftover bytes too short to form a
    header are returned as stdout.
    """

    stdout = bytearray()
    stderr = bytearray()
    offset = 0
    total = len(data)
    while offset < total:
        if offset + _HEADER_SIZE > total:
            stdout.extend(data[offset:])
            break
        stream_type = data[offset]
        (length,) = struct.unpack(">I", data[offset + 4 : offset + _HEADER_SIZE])
        start = offset + _HEADER_SIZE
        end = min(start + length, total)
        target = stderr if stream_type == _STDERR else stdout
        target.extend(data[start:end])
        offset = end

    return (
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )
