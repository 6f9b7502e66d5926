"""Shared pytest configuration and fixtures for the relay test suite."""

import socket
import stat
import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.streaming import StreamingConfig, TranscoderLogManager  # noqa: E402


# =============================================================================
# Fake transcoder
# =============================================================================

# Stands in for ffmpeg. Writes a stream banner with the source size to stderr,
# then either exits, streams 8-byte big-endian counters to stdout (when the
# last argument is "-") or writes an HLS playlist and one segment.
FAKE_TRANSCODER = '''#!{python}
import os
import struct
import sys
import time

BEHAVIOR = {behavior!r}
EXIT_CODE = {exit_code!r}
SIZE = {size!r}
CHUNKS = {chunks!r}
SPAWN_LOG = {spawn_log!r}
ERROR_LINE = {error_line!r}

if SPAWN_LOG:
    with open(SPAWN_LOG, "a") as f:
        f.write(" ".join(sys.argv[1:]) + "\\n")

args = sys.argv[1:]
sys.stderr.write("Input #0, rtsp, from 'camera':\\n")
if SIZE:
    sys.stderr.write("  Stream #0:0: Video: h264 (Main), yuv420p(progressive), %s, 25 fps\\n" % SIZE)
if ERROR_LINE:
    sys.stderr.write(ERROR_LINE + "\\n")
sys.stderr.write("frame=    1 fps=0.0 q=0.0 size=       0kB time=00:00:00.00\\r")
sys.stderr.flush()

if BEHAVIOR == "exit":
    sys.exit(EXIT_CODE)

if args and args[-1] == "-":
    out = sys.stdout.buffer
    counter = 0
    try:
        while CHUNKS is None or counter < CHUNKS:
            out.write(struct.pack(">Q", counter))
            out.flush()
            counter += 1
            time.sleep(0.01)
    except BrokenPipeError:
        sys.exit(1)
    sys.exit(EXIT_CODE)

playlist = args[-1]
pattern = args[args.index("-hls_segment_filename") + 1]
segment = pattern % 0
with open(segment, "wb") as f:
    f.write(b"\\x47" * 188)
with open(playlist, "w") as f:
    f.write("#EXTM3U\\n#EXT-X-VERSION:3\\n#EXT-X-TARGETDURATION:2\\n")
    f.write("#EXTINF:2.000000,\\n%s\\n" % os.path.basename(segment))

if CHUNKS is not None:
    sys.exit(EXIT_CODE)
while True:
    time.sleep(0.1)
'''


@pytest.fixture
def make_transcoder(tmp_path) -> Callable[..., str]:
    """
    Factory writing an executable fake transcoder script.

    Args:
        behavior: "run" (stream or write HLS) or "exit" (exit right after the banner)
        exit_code: code used by "exit" and after ``chunks`` counters
        size: WxH written to stderr, or None for no size line
        chunks: number of stdout counters before exiting (None = forever)
        spawn_log: file receiving one line of arguments per spawn
        error_line: extra stderr line written after the banner
    """
    counter = 0

    def factory(
        behavior: str = "run",
        exit_code: int = 0,
        size: Optional[str] = "320x240",
        chunks: Optional[int] = None,
        spawn_log: Optional[Path] = None,
        error_line: Optional[str] = None,
    ) -> str:
        nonlocal counter
        counter += 1
        script = tmp_path / f"fake-transcoder-{counter}"
        script.write_text(FAKE_TRANSCODER.format(
            python=sys.executable,
            behavior=behavior,
            exit_code=exit_code,
            size=size,
            chunks=chunks,
            spawn_log=str(spawn_log) if spawn_log else None,
            error_line=error_line,
        ))
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(script)

    return factory


@pytest.fixture
def fake_transcoder(make_transcoder) -> str:
    """A fake transcoder that runs until terminated."""
    return make_transcoder()


# =============================================================================
# Configuration
# =============================================================================

def find_free_port_range(count: int) -> int:
    """Return a base port whose ``count`` following ports are all bindable."""
    for _ in range(50):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            base = sock.getsockname()[1]
        if base + count >= 65535:
            continue
        try:
            sockets = []
            for port in range(base, base + count):
                s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                sockets.append(s)
                s.bind(("127.0.0.1", port))
            return base
        except OSError:
            continue
        finally:
            for s in sockets:
                s.close()
    raise RuntimeError("No free port range found")


@pytest.fixture
def hls_dir(tmp_path) -> Path:
    return tmp_path / "hls"


@pytest.fixture
def config(fake_transcoder, hls_dir) -> StreamingConfig:
    """Fast-restarting config bound to localhost and a fake transcoder."""
    return StreamingConfig(
        transcoder_path=fake_transcoder,
        broadcast_host="127.0.0.1",
        public_host="127.0.0.1",
        base_port=find_free_port_range(5),
        port_count=5,
        hls_output_dir=hls_dir,
        restart_delay=0.05,
        restart_max_delay=0.2,
        max_consecutive_failures=3,
        stable_run_seconds=30.0,
        stop_timeout=2.0,
    )


@pytest.fixture
def log_manager() -> TranscoderLogManager:
    return TranscoderLogManager()


