"""
Stream manager: the registry of camera streams.

Maps each stream id to its broadcast server and HLS controller and is the only
component that knows about both delivery modes of a camera.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .broadcast import BroadcastServer
from .config import StreamingConfig
from .definition import StreamDefinition
from .errors import PortInUseError, StreamLimitError
from .logs import TranscoderLogManager, log_manager as default_log_manager
from .ports import PortAllocator
from .segments import SegmentedStreamController
from .supervisor import ProcessState
from ..sentry import capture_exception, clear_stream_context, set_stream_context, traced

logger = logging.getLogger(__name__)


def _rounded(seconds: Optional[float]) -> Optional[float]:
    return None if seconds is None else round(seconds, 1)


@dataclass
class StreamEntry:
    """One registered stream and its two delivery components."""

    definition: StreamDefinition
    broadcast: BroadcastServer
    segments: SegmentedStreamController
    added_at: float = field(default_factory=time.time)

    @property
    def id(self) -> str:
        return self.definition.id

    @property
    def status(self) -> str:
        """running, degraded (one mode down), failed or stopped."""
        broadcast_up = self.broadcast.is_running
        segments_up = self.segments.is_running
        if broadcast_up and segments_up:
            return "running"
        if ProcessState.FAILED in (self.broadcast.state, self.segments.state):
            return "failed"
        if broadcast_up or segments_up:
            return "degraded"
        return "stopped"


class StreamManager:
    """
    Registry and lifecycle control for camera streams.

    All methods run on the event loop. Unknown stream ids are reported with a
    False/None result rather than an exception.
    """

    def __init__(
        self,
        config: Optional[StreamingConfig] = None,
        log_manager: TranscoderLogManager = default_log_manager,
    ):
        self.config = config or StreamingConfig()
        self.log_manager = log_manager
        self._streams: dict[str, StreamEntry] = {}
        self._ports = PortAllocator(self.config.base_port, self.config.port_count)
        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def streams(self) -> dict[str, StreamEntry]:
        return dict(self._streams)

    @property
    def ports(self) -> PortAllocator:
        return self._ports

    def __contains__(self, stream_id: str) -> bool:
        return stream_id in self._streams

    def __len__(self) -> int:
        return len(self._streams)

    def get_entry(self, stream_id: str) -> Optional[StreamEntry]:
        return self._streams.get(stream_id)

    # ==================== Manager lifecycle ====================

    async def start(self) -> None:
        """Start background housekeeping."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="segment-sweep")
        logger.info("Stream manager started")

    async def stop(self) -> None:
        """Stop every stream and wait for the transcoders to exit."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        await self.stop_all_streams()
        await asyncio.gather(
            *(self._wait_closed(entry) for entry in self._streams.values()),
            return_exceptions=True,
        )
        logger.info("Stream manager stopped")

    # ==================== Registry ====================

    async def add_stream(self, stream_id: str, source_url: str, **options: Any) -> StreamDefinition:
        """
        Register a stream.

        An existing stream with the same id is stopped and replaced. A broadcast
        port is allocated unless ``port`` is given.

        Raises:
            ValueError: invalid id, URL or options
            StreamLimitError: ``max_streams`` streams already registered
            PortInUseError: explicit port held by another stream
            PortExhaustedError: no free port left in the range
        """
        definition = StreamDefinition.from_options(stream_id, source_url, self.config, options)

        if definition.port:
            owner = self._ports.owner_of(definition.port)
            if owner is not None and owner != stream_id:
                raise PortInUseError(f"Port {definition.port} is already used by stream {owner}")

        existing = self._streams.get(stream_id)
        if existing is not None:
            logger.info(f"Stream {stream_id} already registered, stopping it before replacing")
            await self._stop_entry(existing)
            del self._streams[stream_id]
            self._ports.release(stream_id)
        elif self.config.max_streams and len(self._streams) >= self.config.max_streams:
            raise StreamLimitError(f"Maximum number of streams ({self.config.max_streams}) reached")

        if definition.port is None:
            definition = definition.with_port(self._ports.allocate(stream_id))
        elif definition.port:
            self._ports.reserve(stream_id, definition.port)

        self._streams[stream_id] = StreamEntry(
            definition=definition,
            broadcast=BroadcastServer(definition, self.config, self.log_manager),
            segments=SegmentedStreamController(definition, self.config, self.log_manager),
        )
        logger.info(f"Stream {stream_id} added: {definition.display_url} (port {definition.port})")
        return definition

    async def remove_stream(self, stream_id: str) -> bool:
        """Stop a stream, free its port and forget it."""
        entry = self._streams.get(stream_id)
        if entry is None:
            logger.warning(f"Cannot remove unknown stream {stream_id}")
            return False

        await self._stop_entry(entry)
        del self._streams[stream_id]
        self._ports.release(stream_id)
        await self.log_manager.remove_stream(stream_id)
        logger.info(f"Stream {stream_id} removed")
        return True

    # ==================== Stream lifecycle ====================

    @traced(op="stream", name="start_stream")
    async def start_stream(self, stream_id: str) -> bool:
        """
        Start both delivery modes of a stream.

        The broadcast side starts first. If the HLS side then fails to start,
        the broadcast side is stopped again before the error propagates, so a
        stream never stays half started. Starting a running stream is a no-op.

        Returns:
            False if the stream is unknown, True otherwise
        """
        entry = self._streams.get(stream_id)
        if entry is None:
            logger.warning(f"Cannot start unknown stream {stream_id}")
            return False

        set_stream_context(stream_id, entry.definition.display_url)
        try:
            await entry.broadcast.start()
            try:
                await entry.segments.start()
            except Exception as e:
                logger.error(f"Failed to start HLS for {stream_id}: {e}, rolling back broadcast")
                await entry.broadcast.stop()
                raise
        except Exception as e:
            capture_exception(e, stream_id=stream_id)
            raise
        finally:
            clear_stream_context()

        logger.info(f"Stream {stream_id} started: {entry.broadcast.url}, {entry.segments.playlist_url}")
        return True

    async def stop_stream(self, stream_id: str) -> bool:
        """
        Stop both delivery modes of a stream. Idempotent.

        Returns:
            False if the stream is unknown, True otherwise
        """
        entry = self._streams.get(stream_id)
        if entry is None:
            logger.warning(f"Cannot stop unknown stream {stream_id}")
            return False

        await self._stop_entry(entry)
        return True

    async def restart_stream(self, stream_id: str) -> bool:
        if not await self.stop_stream(stream_id):
            return False
        return await self.start_stream(stream_id)

    async def start_all_streams(self) -> dict[str, bool]:
        """Start every stream; one failing stream does not stop the others."""
        results = {}
        for stream_id in list(self._streams):
            try:
                results[stream_id] = await self.start_stream(stream_id)
            except Exception as e:
                logger.error(f"Error starting stream {stream_id}: {e}")
                results[stream_id] = False
        return results

    async def stop_all_streams(self) -> dict[str, bool]:
        results = {}
        for stream_id in list(self._streams):
            try:
                results[stream_id] = await self.stop_stream(stream_id)
            except Exception as e:
                logger.error(f"Error stopping stream {stream_id}: {e}")
                capture_exception(e, stream_id=stream_id)
                results[stream_id] = False
        return results

    async def _stop_entry(self, entry: StreamEntry) -> None:
        # Stop the HLS side even if closing the listener fails
        try:
            await entry.broadcast.stop()
        finally:
            await entry.segments.stop()

    async def _wait_closed(self, entry: StreamEntry) -> None:
        await entry.broadcast.supervisor.wait_closed()
        await entry.segments.supervisor.wait_closed()

    # ==================== Status ====================

    def get_stream_info(self, stream_id: str) -> Optional[dict]:
        entry = self._streams.get(stream_id)
        if entry is None:
            return None

        broadcast = entry.broadcast
        segments = entry.segments
        return {
            "id": stream_id,
            "status": entry.status,
            "source_url": entry.definition.display_url,
            "jsmpeg": {
                "ws_url": broadcast.url,
                "port": broadcast.port,
                "is_running": broadcast.is_running,
                "state": broadcast.state.value,
                "clients": broadcast.client_count,
                "width": broadcast.width,
                "height": broadcast.height,
                "frames": broadcast.supervisor.frames,
                "seconds_since_progress": _rounded(broadcast.supervisor.seconds_since_progress),
            },
            "hls": {
                "playlist_url": segments.playlist_url,
                "playlist_path": str(segments.playlist_path),
                "is_running": segments.is_running,
                "state": segments.state.value,
                "window_seconds": segments.staleness_window,
                "frames": segments.supervisor.frames,
                "seconds_since_progress": _rounded(segments.supervisor.seconds_since_progress),
            },
        }

    def get_all_streams_info(self) -> dict[str, dict]:
        return {stream_id: self.get_stream_info(stream_id) for stream_id in self._streams}

    def get_stats(self) -> dict:
        streams = []
        for entry in self._streams.values():
            broadcast_sup = entry.broadcast.supervisor
            segments_sup = entry.segments.supervisor
            streams.append({
                "id": entry.id,
                "status": entry.status,
                "port": self._ports.port_for(entry.id),
                "clients": entry.broadcast.client_count,
                "bytes_relayed": entry.broadcast.bytes_relayed,
                "chunks_dropped": entry.broadcast.chunks_dropped,
                "jsmpeg_restarts": broadcast_sup.restarts,
                "hls_restarts": segments_sup.restarts,
                "jsmpeg_uptime_seconds": round(broadcast_sup.uptime_seconds, 1),
                "hls_uptime_seconds": round(segments_sup.uptime_seconds, 1),
                "last_exit_codes": {
                    "jsmpeg": broadcast_sup.last_exit_code,
                    "hls": segments_sup.last_exit_code,
                },
                "frames": {"jsmpeg": broadcast_sup.frames, "hls": segments_sup.frames},
                "last_progress_at": {
                    "jsmpeg": broadcast_sup.last_progress_at,
                    "hls": segments_sup.last_progress_at,
                },
                "error_lines": broadcast_sup.error_lines + segments_sup.error_lines,
            })

        return {
            "total_streams": len(streams),
            "max_streams": self.config.max_streams,
            "running_streams": sum(1 for s in streams if s["status"] == "running"),
            "failed_streams": sum(1 for s in streams if s["status"] == "failed"),
            "active_connections": sum(s["clients"] for s in streams),
            "free_ports": self._ports.available,
            "streams": streams,
        }

    # ==================== Housekeeping ====================

    def sweep_stale_segments(self, max_age: Optional[float] = None) -> int:
        """
        Delete old files left under the HLS root by streams that are no longer
        registered, and remove directories that end up empty.

        Directories of registered streams are never touched: their transcoder
        is the only writer and deleter of segments.

        Returns:
            Number of files removed
        """
        max_age = self.config.segment_max_age if max_age is None else max_age
        root = self.config.hls_output_dir
        if not root.is_dir():
            return 0

        active_dirs = {entry.definition.segment_dir.resolve() for entry in self._streams.values()}
        now = time.time()
        removed = 0

        for stream_dir in root.iterdir():
            if not stream_dir.is_dir() or stream_dir.resolve() in active_dirs:
                continue
            try:
                removed += self._sweep_dir(stream_dir, now - max_age)
            except OSError as e:
                logger.warning(f"Error cleaning up HLS files in {stream_dir}: {e}")

        if removed:
            logger.info(f"Removed {removed} stale HLS files")
        return removed

    @staticmethod
    def _sweep_dir(stream_dir: Path, cutoff: float) -> int:
        removed = 0
        for path in stream_dir.iterdir():
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
        if not any(stream_dir.iterdir()):
            stream_dir.rmdir()
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                self.sweep_stale_segments()
            except Exception as e:
                logger.error(f"Segment sweep failed: {e}")
                capture_exception(e)
