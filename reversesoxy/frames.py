"""Tunnel framing: a 6-byte header (session id, payload length) before each payload."""

from __future__ import annotations

import struct

_HEADER = struct.Struct(">IH")

HEADER_SIZE = _HEADER.size
MAX_PAYLOAD = 0xFFFF
MAX_SESSION_ID = 0xFFFFFFFF


def pack_header(session_id: int, length: int) -> bytes:
    """Encode a frame header as big-endian session id and payload length."""
    if not 0 <= session_id <= MAX_SESSION_ID:
        raise ValueError(f"session id out of range: {session_id}")
    if not 0 <= length <= MAX_PAYLOAD:
        raise ValueError(f"payload length out of range: {length}")
    return _HEADER.pack(session_id, length)


def unpack_header(data: bytes) -> tuple[int, int]:
    """Decode a frame header into ``(session_id, length)``."""
    if len(data) != HEADER_SIZE:
        raise ValueError(f"frame header must be {HEADER_SIZE} bytes, got {len(data)}")
    session_id, length = _HEADER.unpack(data)
    return session_id, length


def encode_frame(session_id: int, payload: bytes) -> bytes:
    """Return the header followed by the payload."""
    return pack_header(session_id, len(payload)) + bytes(payload)


def recv_exactly(conn, size: int) -> bytes:
    """Read exactly ``size`` bytes from ``conn``; raise EOFError if it closes first."""
    received = bytearray()
    while len(received) < size:
        chunk = conn.recv(size - len(received))
        if not chunk:
            raise EOFError(f"connection closed after {len(received)} of {size} bytes")
        received += chunk
    return bytes(received)