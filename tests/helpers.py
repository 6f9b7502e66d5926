"""Helpers shared by the async tests."""

import asyncio
import struct
import time
from typing import Callable

from src.streaming.protocol import HEADER_SIZE, STREAM_MAGIC_BYTES


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


def decode_counters(payload: bytes) -> list[int]:
    """Split fake transcoder output into its 8-byte counters."""
    usable = len(payload) - len(payload) % 8
    return [value for (value,) in struct.iter_unpack(">Q", payload[:usable])]


def parse_header(data: bytes) -> tuple[int, int]:
    """Read (width, height) from a broadcast connection header."""
    if len(data) < HEADER_SIZE:
        raise ValueError(f"Stream header needs {HEADER_SIZE} bytes, got {len(data)}")
    magic, width, height = struct.unpack_from(">4sHH", data)
    if magic != STREAM_MAGIC_BYTES:
        raise ValueError(f"Bad stream magic: {magic!r}")
    return width, height
