"""
Binary stream framing for broadcast clients.

Each client connection starts with one 8-byte header:

    magic[4] | width (uint16 big-endian) | height (uint16 big-endian)

Everything after the header is raw MPEG-TS produced by the transcoder, with no
further framing. The magic token is the one JSMpeg players expect.
"""

import struct

STREAM_MAGIC_BYTES = b"jsmp"
DEFAULT_WIDTH = 640
DEFAULT_HEIGHT = 480

_HEADER = struct.Struct(">4sHH")
HEADER_SIZE = _HEADER.size


def encode_header(width: int | None = None, height: int | None = None) -> bytes:
    """Build the connection header, falling back to 640x480 for unknown sizes."""
    width = width or DEFAULT_WIDTH
    height = height or DEFAULT_HEIGHT
    if not (0 < width <= 0xFFFF and 0 < height <= 0xFFFF):
        raise ValueError(f"Video size {width}x{height} does not fit the stream header")
    return _HEADER.pack(STREAM_MAGIC_BYTES, width, height)

