"""
Transcoder logs routes with SSE support.
"""

import json
from typing import AsyncGenerator, Optional

from litestar import Controller, delete, get
from litestar.response import Stream

from ...streaming import StreamManager


class LogsController(Controller):
    """Transcoder logs endpoints with SSE support."""

    path = "/api/streams"

    @get("/{stream_id:str}/logs")
    async def get_logs(
        self, stream_id: str, stream_manager: StreamManager, level: Optional[str] = None
    ) -> dict:
        """Get buffered logs for a stream, optionally filtered by level."""
        logs = await stream_manager.log_manager.get_logs(stream_id, level)
        return {
            "stream_id": stream_id,
            "logs": logs,
            "total": len(logs),
        }

    @delete("/{stream_id:str}/logs", status_code=200)
    async def clear_logs(self, stream_id: str, stream_manager: StreamManager) -> dict:
        success = await stream_manager.log_manager.clear_logs(stream_id)
        return {
            "stream_id": stream_id,
            "cleared": success,
        }

    @get("/{stream_id:str}/logs/stream")
    async def stream_logs(self, stream_id: str, stream_manager: StreamManager) -> Stream:
        """
        Stream logs in real-time via Server-Sent Events (SSE).

        Usage in frontend:
            const eventSource = new EventSource('/api/streams/{id}/logs/stream');
            eventSource.onmessage = (e) => console.log(JSON.parse(e.data));
        """
        log_manager = stream_manager.log_manager

        async def generate_events() -> AsyncGenerator[bytes, None]:
            yield b"event: connected\ndata: {\"status\": \"connected\"}\n\n"

            async for entry in log_manager.subscribe(stream_id):
                data = json.dumps(entry.to_dict())
                yield f"data: {data}\n\n".encode("utf-8")

        return Stream(
            generate_events(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # Disable nginx buffering
            },
        )
