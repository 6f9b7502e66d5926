"""Tests for the broadcast connection header."""

import pytest

from src.streaming.protocol import (
    DEFAULT_HEIGHT,
    DEFAULT_WIDTH,
    HEADER_SIZE,
    STREAM_MAGIC_BYTES,
    encode_header,
)
from tests.helpers import parse_header


class TestEncodeHeader:

    def test_layout(self):
        assert encode_header(1280, 720) == b"jsmp\x05\x00\x02\xd0"

    def test_is_eight_bytes(self):
        assert HEADER_SIZE == 8
        assert len(encode_header(320, 240)) == 8

    def test_unknown_size_uses_defaults(self):
        assert encode_header() == STREAM_MAGIC_BYTES + b"\x02\x80\x01\xe0"
        assert parse_header(encode_header(None, None)) == (DEFAULT_WIDTH, DEFAULT_HEIGHT)

    def test_max_dimension(self):
        assert parse_header(encode_header(65535, 65535)) == (65535, 65535)

    def test_oversized_dimension_rejected(self):
        with pytest.raises(ValueError):
            encode_header(65536, 480)

    def test_zero_dimension_uses_default(self):
        assert parse_header(encode_header(0, 720)) == (DEFAULT_WIDTH, 720)
