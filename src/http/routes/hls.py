"""
HLS streaming routes.
"""

import logging

from litestar import Controller, get
from litestar.exceptions import HTTPException
from litestar.response import File

from ...streaming import StreamManager

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
}


class HLSController(Controller):
    """Serves playlists and segments written by the HLS transcoders."""

    path = "/hls"

    @get("/{stream_id:str}/{filename:str}")
    async def get_hls_file(
        self, stream_id: str, filename: str, stream_manager: StreamManager
    ) -> File:
        """Serve an m3u8 playlist or a .ts segment."""
        suffix = filename[filename.rfind("."):] if "." in filename else ""
        content_type = CONTENT_TYPES.get(suffix)
        if content_type is None:
            raise HTTPException(status_code=400, detail="Invalid file type")

        # Prevent path traversal
        if ".." in stream_id or ".." in filename or "/" in filename or "\\" in filename:
            raise HTTPException(status_code=400, detail="Invalid path")

        entry = stream_manager.get_entry(stream_id)
        stream_dir = (
            entry.definition.segment_dir
            if entry is not None
            else stream_manager.config.hls_output_dir / stream_id
        )
        file_path = stream_dir / filename

        if not file_path.is_file():
            raise HTTPException(status_code=404, detail="File not found")

        return File(
            path=file_path,
            media_type=content_type,
            headers={
                "Cache-Control": "no-cache, no-store, must-revalidate",
            },
        )
