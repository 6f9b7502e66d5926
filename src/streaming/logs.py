"""
Transcoder log buffer for per-stream diagnostics.

Logs are kept IN MEMORY ONLY using circular buffers, so a chatty transcoder
cannot fill the disk.

Limits:
- Max 500 entries per stream
- Max 500 chars per log message (truncated if longer)
- Max 32 streams with logs at once (least recently active removed first)
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Deque

MAX_ENTRIES_PER_STREAM = 500
MAX_MESSAGE_LENGTH = 500
MAX_STREAMS_WITH_LOGS = 32


def classify_line(text: str) -> str:
    """Pick a log level from transcoder output."""
    lowered = text.lower()
    if any(word in lowered for word in ("error", "fatal", "failed")):
        return "error"
    if "warning" in lowered:
        return "warning"
    return "info"


@dataclass
class LogEntry:
    timestamp: datetime
    message: str
    level: str = "info"  # info, warning, error
    source: str = ""  # delivery mode that produced the line

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "level": self.level,
            "source": self.source,
        }


@dataclass
class StreamLogs:
    stream_id: str
    entries: Deque[LogEntry] = field(
        default_factory=lambda: deque(maxlen=MAX_ENTRIES_PER_STREAM)
    )
    subscribers: list[asyncio.Queue] = field(default_factory=list)
    last_activity: datetime = field(default_factory=datetime.now)

    def add(self, message: str, level: str, source: str) -> LogEntry:
        if len(message) > MAX_MESSAGE_LENGTH:
            message = message[:MAX_MESSAGE_LENGTH] + "..."

        entry = LogEntry(timestamp=datetime.now(), message=message, level=level, source=source)
        self.entries.append(entry)
        self.last_activity = entry.timestamp
        return entry


class TranscoderLogManager:
    """
    Transcoder output across all streams.

    Subscribers (SSE) get a small queue each; entries are skipped for a
    subscriber whose queue is full instead of blocking the transcoder reader.
    """

    def __init__(self, max_streams: int = MAX_STREAMS_WITH_LOGS):
        self.max_streams = max_streams
        self._streams: dict[str, StreamLogs] = {}
        self._lock = asyncio.Lock()

    def _get_or_create(self, stream_id: str) -> StreamLogs:
        logs = self._streams.get(stream_id)
        if logs is None:
            if len(self._streams) >= self.max_streams:
                idle = [sid for sid, s in self._streams.items() if not s.subscribers]
                if idle:
                    oldest = min(idle, key=lambda sid: self._streams[sid].last_activity)
                    del self._streams[oldest]
            logs = self._streams[stream_id] = StreamLogs(stream_id=stream_id)
        return logs

    async def add_log(
        self,
        stream_id: str,
        message: str,
        level: str = "info",
        source: str = "",
    ) -> None:
        async with self._lock:
            entry = self._get_or_create(stream_id).add(message, level, source)
            for queue in self._streams[stream_id].subscribers:
                try:
                    queue.put_nowait(entry)
                except asyncio.QueueFull:
                    pass

    async def get_logs(self, stream_id: str, level: str | None = None) -> list[dict]:
        async with self._lock:
            logs = self._streams.get(stream_id)
            entries = list(logs.entries) if logs else []

        if level:
            entries = [e for e in entries if e.level == level.lower()]
        return [e.to_dict() for e in entries]

    async def clear_logs(self, stream_id: str) -> bool:
        async with self._lock:
            logs = self._streams.get(stream_id)
            if logs is None:
                return False
            logs.entries.clear()
            return True

    async def subscribe(self, stream_id: str) -> AsyncIterator[LogEntry]:
        """
        Yield new log entries for a stream as they arrive.

        Usage:
            async for entry in log_manager.subscribe(stream_id):
                yield f"data: {json.dumps(entry.to_dict())}\n\n"
        """
        queue: asyncio.Queue[LogEntry] = asyncio.Queue(maxsize=50)

        async with self._lock:
            self._get_or_create(stream_id).subscribers.append(queue)

        try:
            while True:
                yield await queue.get()
        finally:
            async with self._lock:
                logs = self._streams.get(stream_id)
                if logs and queue in logs.subscribers:
                    logs.subscribers.remove(queue)

    async def remove_stream(self, stream_id: str) -> None:
        async with self._lock:
            self._streams.pop(stream_id, None)


# Global log manager instance
log_manager = TranscoderLogManager()
