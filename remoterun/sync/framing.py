"""Length-prefixed framing for structured messages and raw file bodies.

Every frame on the wire is an 8-byte unsigned little-endian length followed by
exactly that many payload bytes. Structured frames carry UTF-8 JSON; raw
frames carry an opaque file body and always follow a ``FileHeader`` frame.
"""

from __future__ import annotations

import json
import struct
from typing import Any, BinaryIO

from ..errors import FilesystemError, NetworkError, ProtocolError

LENGTH_PREFIX = struct.Struct("<Q")
BLOCK_CHUNK_SIZE = 64 * 1024
MAX_MESSAGE_BYTES = 64 * 1024 * 1024


def read_exact(stream: BinaryIO, size: int) -> bytes:
    """Read exactly ``size`` bytes or raise NetworkError."""
    buffer = bytearray()
    while len(buffer) < size:
        try:
            chunk = stream.read(size - len(buffer))
        except OSError as exc:
            raise NetworkError(f"Read failed: {exc}") from exc
        if not chunk:
            raise NetworkError(
                f"Connection closed after {len(buffer)} of {size} expected bytes"
            )
        buffer.extend(chunk)
    return bytes(buffer)


def _write(stream: BinaryIO, data: bytes) -> None:
    try:
        stream.write(data)
    except OSError as exc:
        raise NetworkError(f"Write failed: {exc}") from exc


def _flush(stream: BinaryIO) -> None:
    try:
        stream.flush()
    except OSError as exc:
        raise NetworkError(f"Flush failed: {exc}") from exc


def _read_length(stream: BinaryIO) -> int:
    (length,) = LENGTH_PREFIX.unpack(read_exact(stream, LENGTH_PREFIX.size))
    return length


def send_message(stream: BinaryIO, value: Any) -> None:
    """Serialize ``value`` as JSON and write it as one frame."""
    try:
        payload = json.dumps(value, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Cannot serialize message: {exc}") from exc
    _write(stream, LENGTH_PREFIX.pack(len(payload)))
    _write(stream, payload)
    _flush(stream)


def receive_message(stream: BinaryIO, max_bytes: int = MAX_MESSAGE_BYTES) -> Any:
    """Read one frame and decode its JSON payload."""
    length = _read_length(stream)
    if length > max_bytes:
        raise ProtocolError(f"Message of {length} bytes exceeds limit of {max_bytes}")
    payload = read_exact(stream, length)
    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError(f"Malformed message payload: {exc}") from exc


def send_block(stream: BinaryIO, source: BinaryIO, length: int) -> None:
    """Write a raw frame of ``length`` bytes copied from ``source``."""
    _write(stream, LENGTH_PREFIX.pack(length))
    remaining = length
    while remaining:
        try:
            chunk = source.read(min(BLOCK_CHUNK_SIZE, remaining))
        except OSError as exc:
            raise FilesystemError(f"Cannot read file body: {exc}") from exc
        if not chunk:
            raise FilesystemError(
                f"File body ended {remaining} bytes short of announced length {length}"
            )
        _write(stream, chunk)
        remaining -= len(chunk)
    _flush(stream)


def receive_block(stream: BinaryIO, sink: BinaryIO, expected_length: int) -> int:
    """Copy one raw frame into ``sink``; its prefix must match ``expected_length``."""
    length = _read_length(stream)
    if length != expected_length:
        raise ProtocolError(
            f"Raw block announces {length} bytes but header promised {expected_length}"
        )
    remaining = length
    while remaining:
        chunk = read_exact(stream, min(BLOCK_CHUNK_SIZE, remaining))
        try:
            sink.write(chunk)
        except OSError as exc:
            raise FilesystemError(f"Cannot write file body: {exc}") from exc
        remaining -= len(chunk)
    return length


__all__ = [
    "LENGTH_PREFIX",
    "MAX_MESSAGE_BYTES",
    "read_exact",
    "receive_block",
    "receive_message",
    "send_block",
    "send_message",
]
