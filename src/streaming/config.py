"""
Streaming configuration.

Values are read from environment variables (``main.py`` loads ``.env`` with
python-dotenv before building the config).
"""

import os
from dataclasses import dataclass
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class StreamingConfig:
    """Configuration consumed by the stream manager and its components."""

    transcoder_path: str = "ffmpeg"

    # Broadcast (WebSocket) listeners
    broadcast_host: str = "0.0.0.0"
    public_host: str = "localhost"
    base_port: int = 9999
    port_count: int = 100
    client_queue_size: int = 256

    # HLS output
    hls_output_dir: Path = Path("./public/hls")
    segment_duration: int = 2
    playlist_size: int = 10

    # Transcoding defaults
    default_bitrate_kbps: int = 1000
    default_frame_rate: int = 25

    # Restart policy
    restart_delay: float = 5.0
    restart_max_delay: float = 60.0
    max_consecutive_failures: int = 10  # 0 = retry forever
    stable_run_seconds: float = 30.0
    stop_timeout: float = 3.0

    # Admission (0 = unlimited)
    max_streams: int = 0

    # Leftover segment directories of unregistered streams
    sweep_interval: float = 60.0
    segment_max_age: float = 24 * 3600.0

    def __post_init__(self) -> None:
        self.hls_output_dir = Path(self.hls_output_dir)
        if self.port_count < 1:
            raise ValueError("port_count must be at least 1")
        if self.segment_duration < 1 or self.playlist_size < 1:
            raise ValueError("segment_duration and playlist_size must be positive")
        if self.restart_delay < 0 or self.restart_max_delay < self.restart_delay:
            raise ValueError("restart_max_delay must be >= restart_delay >= 0")

    @classmethod
    def from_env(cls) -> "StreamingConfig":
        """Build configuration from environment variables."""
        return cls(
            transcoder_path=os.getenv("TRANSCODER_PATH", "ffmpeg"),
            broadcast_host=os.getenv("BROADCAST_HOST", "0.0.0.0"),
            public_host=os.getenv("PUBLIC_HOST", "localhost"),
            base_port=_env_int("BROADCAST_BASE_PORT", 9999),
            port_count=_env_int("BROADCAST_PORT_COUNT", 100),
            client_queue_size=_env_int("CLIENT_QUEUE_SIZE", 256),
            hls_output_dir=Path(os.getenv("HLS_OUTPUT_DIR", "./public/hls")),
            segment_duration=_env_int("HLS_SEGMENT_DURATION", 2),
            playlist_size=_env_int("HLS_PLAYLIST_SIZE", 10),
            default_bitrate_kbps=_env_int("DEFAULT_BITRATE_KBPS", 1000),
            default_frame_rate=_env_int("DEFAULT_FRAME_RATE", 25),
            restart_delay=_env_float("RESTART_DELAY", 5.0),
            restart_max_delay=_env_float("RESTART_MAX_DELAY", 60.0),
            max_consecutive_failures=_env_int("MAX_CONSECUTIVE_FAILURES", 10),
            stable_run_seconds=_env_float("STABLE_RUN_SECONDS", 30.0),
            stop_timeout=_env_float("STOP_TIMEOUT", 3.0),
            max_streams=_env_int("MAX_STREAMS", 0),
            sweep_interval=_env_float("SEGMENT_SWEEP_INTERVAL", 60.0),
            segment_max_age=_env_float("SEGMENT_MAX_AGE", 24 * 3600.0),
        )
