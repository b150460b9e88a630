"""
framing.py — length-prefixed JSON frames over asyncio streams.

Wire format:
- 4-byte little-endian unsigned length N, then N bytes of UTF-8 JSON (one object).
- Hard cap at 4 MiB: a 1 MiB attachment grows to ~1.4 MiB as base64url,
  which leaves room for the envelope without letting a peer make us
  allocate silly amounts of memory.
"""

import asyncio
import json
import struct
from typing import Any, Dict, Optional

MAX_FRAME_SIZE = 4 * 1024 * 1024
LENGTH_STRUCT = struct.Struct("<I")


class FrameError(ValueError):
    """The peer sent something that isn't a valid frame."""


def encode_frame(obj: Dict[str, Any]) -> bytes:
    payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if len(payload) > MAX_FRAME_SIZE:
        raise FrameError(f"Frame too large: {len(payload)} > {MAX_FRAME_SIZE}")
    return LENGTH_STRUCT.pack(len(payload)) + payload


async def read_frame(reader: asyncio.StreamReader) -> Optional[Dict[str, Any]]:
    """
    Read one frame. Returns None if the peer closed the stream cleanly
    between frames; raises IncompleteReadError if it hung up mid-frame.
    """
    try:
        header = await reader.readexactly(LENGTH_STRUCT.size)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise
    (length,) = LENGTH_STRUCT.unpack(header)
    if length > MAX_FRAME_SIZE:
        raise FrameError(f"Frame too large: {length} > {MAX_FRAME_SIZE}")
    payload = await reader.readexactly(length)
    try:
        obj = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        # Keep the message short; no payload echo.
        raise FrameError(f"Invalid JSON frame: {exc}") from exc
    if not isinstance(obj, dict):
        raise FrameError("Frame must be a JSON object")
    return obj


async def write_frame(writer: asyncio.StreamWriter, obj: Dict[str, Any]) -> None:
    writer.write(encode_frame(obj))
    await writer.drain()
