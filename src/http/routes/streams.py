"""
Stream control routes.
"""

import logging
from typing import Literal, Optional

from litestar import Controller, delete, get, post
from litestar.exceptions import HTTPException
from pydantic import BaseModel, Field

from ...streaming import StreamManager

logger = logging.getLogger(__name__)


class StreamCreateDTO(BaseModel):
    """DTO for registering a stream."""
    id: str
    source_url: str
    port: Optional[int] = Field(default=None, ge=0, le=65535)
    width: Optional[int] = Field(default=None, gt=0, le=65535)
    height: Optional[int] = Field(default=None, gt=0, le=65535)
    bitrate_kbps: Optional[int] = Field(default=None, gt=0)
    frame_rate: Optional[int] = Field(default=None, gt=0)
    segment_duration: Optional[int] = Field(default=None, gt=0)
    playlist_size: Optional[int] = Field(default=None, gt=0)
    quality: Optional[Literal["low", "medium", "high"]] = None

    def options(self) -> dict:
        return self.model_dump(exclude={"id", "source_url"}, exclude_none=True)


def _require_info(stream_manager: StreamManager, stream_id: str) -> dict:
    info = stream_manager.get_stream_info(stream_id)
    if info is None:
        raise HTTPException(status_code=404, detail=f"Stream {stream_id} not found")
    return info


class StreamsController(Controller):
    """Stream registry and lifecycle endpoints."""

    path = "/api/streams"

    @get("/")
    async def list_streams(self, stream_manager: StreamManager) -> dict:
        """List all registered streams."""
        streams = list(stream_manager.get_all_streams_info().values())
        return {
            "streams": streams,
            "total": len(streams),
            "running_count": sum(1 for s in streams if s["status"] == "running"),
        }

    @post("/")
    async def add_stream(self, data: StreamCreateDTO, stream_manager: StreamManager) -> dict:
        """
        Register a stream (replaces an existing one with the same id).

        Port conflicts and the stream limit surface as 409 through the app's
        StreamError handler.
        """
        try:
            await stream_manager.add_stream(data.id, data.source_url, **data.options())
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        return stream_manager.get_stream_info(data.id)

    @get("/stats")
    async def get_stats(self, stream_manager: StreamManager) -> dict:
        return stream_manager.get_stats()

    @post("/start-all")
    async def start_all(self, stream_manager: StreamManager) -> dict:
        results = await stream_manager.start_all_streams()
        return {"results": results, "started": sum(results.values()), "total": len(results)}

    @post("/stop-all")
    async def stop_all(self, stream_manager: StreamManager) -> dict:
        results = await stream_manager.stop_all_streams()
        return {"results": results, "stopped": sum(results.values()), "total": len(results)}

    @get("/{stream_id:str}")
    async def get_stream(self, stream_id: str, stream_manager: StreamManager) -> dict:
        return _require_info(stream_manager, stream_id)

    @delete("/{stream_id:str}", status_code=200)
    async def remove_stream(self, stream_id: str, stream_manager: StreamManager) -> dict:
        """Stop a stream and unregister it."""
        if not await stream_manager.remove_stream(stream_id):
            raise HTTPException(status_code=404, detail=f"Stream {stream_id} not found")
        return {"id": stream_id, "removed": True}

    @post("/{stream_id:str}/start")
    async def start_stream(self, stream_id: str, stream_manager: StreamManager) -> dict:
        """Start both delivery modes of a stream."""
        try:
            found = await stream_manager.start_stream(stream_id)
        except OSError as e:
            logger.error(f"Failed to start stream {stream_id}: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to start stream: {e}")

        if not found:
            raise HTTPException(status_code=404, detail=f"Stream {stream_id} not found")
        return _require_info(stream_manager, stream_id)

    @post("/{stream_id:str}/stop")
    async def stop_stream(self, stream_id: str, stream_manager: StreamManager) -> dict:
        if not await stream_manager.stop_stream(stream_id):
            raise HTTPException(status_code=404, detail=f"Stream {stream_id} not found")
        return _require_info(stream_manager, stream_id)

    @post("/{stream_id:str}/restart")
    async def restart_stream(self, stream_id: str, stream_manager: StreamManager) -> dict:
        try:
            found = await stream_manager.restart_stream(stream_id)
        except OSError as e:
            logger.error(f"Failed to restart stream {stream_id}: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to restart stream: {e}")

        if not found:
            raise HTTPException(status_code=404, detail=f"Stream {stream_id} not found")
        return _require_info(stream_manager, stream_id)
