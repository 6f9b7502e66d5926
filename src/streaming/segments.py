"""
Segmented HTTP (HLS) stream controller.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from .commands import build_segmented_args
from .config import StreamingConfig
from .definition import StreamDefinition
from .events import Exited, Failed, Restarting, Started
from .logs import TranscoderLogManager, log_manager as default_log_manager
from .supervisor import ProcessState, TranscoderSupervisor

logger = logging.getLogger(__name__)

MODE = "hls"


class SegmentedStreamController:
    """
    Keeps a rolling window of HLS segments on disk for one stream.

    Segment files and the playlist are written and deleted by the transcoder
    only. This controller provisions the directory, builds the transcoder
    arguments and delegates the lifecycle to its supervisor. Stopping leaves
    the files in place; the next start overwrites the rotation.
    """

    def __init__(
        self,
        definition: StreamDefinition,
        config: StreamingConfig,
        log_manager: TranscoderLogManager = default_log_manager,
    ):
        self.definition = definition
        self.stream_id = definition.id
        self._events: asyncio.Queue = asyncio.Queue()
        self.supervisor = TranscoderSupervisor(
            stream_id=definition.id,
            mode=MODE,
            args=build_segmented_args(definition),
            events=self._events,
            config=config,
            log_manager=log_manager,
        )
        self._consumer: Optional[asyncio.Task] = None

    @property
    def output_dir(self) -> Path:
        return self.definition.segment_dir

    @property
    def playlist_path(self) -> Path:
        return self.definition.playlist_path

    @property
    def playlist_url(self) -> str:
        return f"/hls/{self.stream_id}/{self.definition.playlist_name}"

    @property
    def staleness_window(self) -> int:
        """Seconds of video the playlist can reference."""
        return self.definition.segment_duration * self.definition.playlist_size

    @property
    def is_running(self) -> bool:
        return self.supervisor.is_running

    @property
    def state(self) -> ProcessState:
        return self.supervisor.state

    async def start(self) -> bool:
        """
        Provision the output directory and start the transcoder.

        Raises:
            OSError: if the output directory cannot be created
        """
        if self.supervisor.is_running:
            return False

        self.output_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"HLS output for {self.stream_id}: {self.playlist_path}")

        self._drain_events()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(
                self._consume_events(), name=f"hls-{self.stream_id}"
            )
        return self.supervisor.start()

    async def stop(self) -> bool:
        stopped = self.supervisor.stop()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        self._drain_events()
        if stopped:
            logger.info(f"HLS stream {self.stream_id} stopped")
        return stopped

    def _drain_events(self) -> None:
        # Events of a stopped run must not be reported as the next run's
        while not self._events.empty():
            self._events.get_nowait()

    async def _consume_events(self) -> None:
        # stdout carries nothing in this mode; events are only logged
        while True:
            event = await self._events.get()

            if isinstance(event, Started):
                logger.debug(f"HLS {self.stream_id}: transcoder PID {event.pid} up")
            elif isinstance(event, Exited):
                logger.debug(f"HLS {self.stream_id}: transcoder exited ({event.returncode})")
            elif isinstance(event, Restarting):
                logger.debug(f"HLS {self.stream_id}: restart {event.attempt} in {event.delay:g}s")
            elif isinstance(event, Failed):
                logger.error(
                    f"HLS {self.stream_id}: transcoder failed {event.failures} times, "
                    "stream needs manual restart"
                )
