#!/usr/bin/env python3
"""
RTSP stream relay - Main entry point.

The relay is responsible for:
1. Transcoding each registered camera into a live WebSocket (JSMpeg) broadcast
2. Keeping a rolling HLS window of every camera on disk and serving it
3. Auto-restarting transcoders if they fail
4. Exposing stream control over HTTP
"""

import asyncio
import json
import logging
import os
import signal
from pathlib import Path
from typing import Literal, Optional

import uvloop
from dotenv import load_dotenv
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

import uvicorn

from src.http import create_app
from src.sentry import init_sentry
from src.streaming import StreamingConfig, StreamManager

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global instances for signal handling
http_server: uvicorn.Server | None = None
stream_manager: StreamManager | None = None


class StreamFileEntry(BaseModel):
    """One stream in the STREAMS_FILE list."""
    id: str
    source_url: str
    port: Optional[int] = Field(default=None, ge=0, le=65535)
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    bitrate_kbps: Optional[int] = Field(default=None, gt=0)
    frame_rate: Optional[int] = Field(default=None, gt=0)
    segment_duration: Optional[int] = Field(default=None, gt=0)
    playlist_size: Optional[int] = Field(default=None, gt=0)
    quality: Optional[Literal["low", "medium", "high"]] = None
    autostart: bool = True


_stream_list = TypeAdapter(list[StreamFileEntry])


def load_streams_file(path: Path) -> list[StreamFileEntry]:
    """Read and validate the stream definitions file."""
    return _stream_list.validate_python(json.loads(path.read_text()))


async def auto_start_streams(manager: StreamManager, streams_file: Optional[str]) -> None:
    """Register and start the streams listed in STREAMS_FILE."""
    if not streams_file:
        logger.info("STREAMS_FILE not set, waiting for streams over HTTP")
        return

    path = Path(streams_file)
    if not path.exists():
        logger.warning(f"Streams file {path} not found, skipping auto-start")
        return

    try:
        entries = load_streams_file(path)
    except (ValueError, ValidationError) as e:
        logger.error(f"Invalid streams file {path}: {e}")
        return

    logger.info("=" * 50)
    logger.info(f"Auto-starting {len(entries)} streams from {path}...")
    logger.info("=" * 50)

    started_count = 0
    for i, entry in enumerate(entries):
        options = entry.model_dump(exclude={"id", "source_url", "autostart"}, exclude_none=True)
        try:
            await manager.add_stream(entry.id, entry.source_url, **options)
            if entry.autostart and await manager.start_stream(entry.id):
                started_count += 1
                logger.info(f"[{i + 1}/{len(entries)}] Stream {entry.id} started")
        except Exception as e:
            logger.error(f"[{i + 1}/{len(entries)}] Error starting stream {entry.id}: {e}")

    logger.info("=" * 50)
    logger.info(f"Auto-start complete: {started_count}/{len(entries)} streams started")
    logger.info("=" * 50)


async def main():
    """Main entry point."""
    global http_server, stream_manager

    http_port = int(os.getenv('HTTP_PORT', '8080'))

    init_sentry(
        dsn=os.getenv("SENTRY_DSN"),
        environment=os.getenv("SENTRY_ENVIRONMENT", "production"),
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.2")),
    )

    try:
        config = StreamingConfig.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return

    logger.info("Starting RTSP stream relay")
    logger.info(f"Transcoder: {config.transcoder_path}")
    logger.info(f"HLS output: {config.hls_output_dir}")
    logger.info(f"Broadcast ports: {config.base_port}-{config.base_port + config.port_count - 1}")

    stream_manager = StreamManager(config)
    await stream_manager.start()

    app = create_app(stream_manager=stream_manager)

    server_config = uvicorn.Config(
        app=app,
        host="0.0.0.0",
        port=http_port,
        log_level="info",
        access_log=False,
    )
    http_server = uvicorn.Server(server_config)

    # uvicorn captures these while serving; outside that window they land here
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    http_server_task = asyncio.create_task(http_server.serve())
    logger.info(f"HTTP server started on http://0.0.0.0:{http_port}")

    await auto_start_streams(stream_manager, os.getenv("STREAMS_FILE"))

    try:
        await http_server_task
    except asyncio.CancelledError:
        logger.info("Shutting down...")
    finally:
        await stream_manager.stop()


def handle_signal(sig: signal.Signals) -> None:
    """Handle shutdown signals."""
    logger.info(f"Received signal {sig.name}, shutting down...")
    if http_server:
        http_server.should_exit = True


if __name__ == '__main__':
    # Use uvloop for better async performance
    uvloop.install()
    asyncio.run(main())
