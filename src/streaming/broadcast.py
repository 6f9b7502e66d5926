"""
Binary stream broadcast server.

One WebSocket listener per stream. Every client gets the 8-byte stream header
first, then the transcoder's stdout relayed chunk by chunk.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed, ConnectionClosedError
from websockets.protocol import State

from .commands import build_broadcast_args
from .config import StreamingConfig
from .definition import StreamDefinition
from .events import Data, Exited, Failed, Restarting, Started, VideoSize
from .logs import TranscoderLogManager, log_manager as default_log_manager
from .protocol import encode_header
from .supervisor import ProcessState, TranscoderSupervisor

logger = logging.getLogger(__name__)

MODE = "jsmpeg"


@dataclass(eq=False)
class BroadcastClient:
    """One connected client and its pending chunks."""

    connection: ServerConnection
    queue: asyncio.Queue
    dropped: int = 0

    @property
    def address(self) -> str:
        remote = self.connection.remote_address
        if not remote:
            return "unknown"
        return f"{remote[0]}:{remote[1]}"


class BroadcastServer:
    """
    Relays one stream's transcoded bytes to every connected client.

    The server is the only owner of the client set: connects, disconnects and
    relays all happen on the event loop through this object. Each client has
    a bounded FIFO queue drained by its own sender task, so chunks reach every
    client in production order. A client whose queue is full (slow reader)
    misses chunks instead of stalling the others.
    """

    def __init__(
        self,
        definition: StreamDefinition,
        config: StreamingConfig,
        log_manager: TranscoderLogManager = default_log_manager,
    ):
        self.definition = definition
        self.stream_id = definition.id
        self.host = config.broadcast_host
        self.public_host = config.public_host
        self.client_queue_size = config.client_queue_size

        self.width: Optional[int] = definition.width
        self.height: Optional[int] = definition.height

        self.bytes_relayed = 0
        self.chunks_dropped = 0

        self._events: asyncio.Queue = asyncio.Queue()
        self.supervisor = TranscoderSupervisor(
            stream_id=definition.id,
            mode=MODE,
            args=build_broadcast_args(definition),
            events=self._events,
            config=config,
            known_size=(definition.width, definition.height) if definition.has_resolution else None,
            log_manager=log_manager,
        )

        self._clients: set[BroadcastClient] = set()
        self._server: Optional[Server] = None
        self._consumer: Optional[asyncio.Task] = None

    # ==================== Properties ====================

    @property
    def port(self) -> int:
        """Listening port (the bound one when an ephemeral port was requested)."""
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self.definition.port or 0

    @property
    def url(self) -> str:
        return f"ws://{self.public_host}:{self.port}"

    @property
    def is_listening(self) -> bool:
        return self._server is not None

    @property
    def is_running(self) -> bool:
        return self.is_listening and self.supervisor.is_running

    @property
    def state(self) -> ProcessState:
        return self.supervisor.state

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def build_header(self) -> bytes:
        return encode_header(self.width, self.height)

    # ==================== Lifecycle ====================

    async def start(self) -> bool:
        """
        Open the listener and start the transcoder.

        Idempotent. A listener that is already open only revives a transcoder
        that has exited or failed.

        Raises:
            OSError: if the port cannot be bound
        """
        if self._server is not None:
            return self.supervisor.start()

        self._server = await serve(
            self._handle_client,
            self.host,
            self.definition.port,
            compression=None,
        )
        self._consumer = asyncio.create_task(
            self._consume_events(), name=f"broadcast-{self.stream_id}"
        )
        logger.info(f"Broadcast server for {self.stream_id} listening on {self.host}:{self.port}")

        self.supervisor.start()
        return True

    async def stop(self) -> bool:
        """
        Stop the transcoder and close the listener.

        Open clients get a normal WebSocket close; new connections are refused.
        Idempotent.
        """
        stopped = self.supervisor.stop()
        if self._server is None:
            return stopped

        server, self._server = self._server, None
        server.close()
        await server.wait_closed()

        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

        # Chunks queued from the stopped transcoder must not reach future clients
        while not self._events.empty():
            self._events.get_nowait()

        logger.info(f"Broadcast server for {self.stream_id} stopped")
        return True

    # ==================== Relay ====================

    def broadcast(self, chunk: bytes) -> None:
        """Queue one chunk for every open client."""
        self.bytes_relayed += len(chunk)
        for client in list(self._clients):
            if client.connection.state is not State.OPEN:
                continue
            try:
                client.queue.put_nowait(chunk)
            except asyncio.QueueFull:
                client.dropped += 1
                self.chunks_dropped += 1
                if client.dropped == 1 or client.dropped % 100 == 0:
                    logger.debug(
                        f"Client {client.address} on {self.stream_id} is too slow, "
                        f"{client.dropped} chunks dropped"
                    )

    async def _consume_events(self) -> None:
        while True:
            event = await self._events.get()

            if isinstance(event, Data):
                self.broadcast(event.chunk)
            elif isinstance(event, VideoSize):
                if self.width is None and self.height is None:
                    self.width, self.height = event.width, event.height
            elif isinstance(event, Started):
                logger.debug(f"Broadcast {self.stream_id}: transcoder PID {event.pid} up")
            elif isinstance(event, Exited):
                logger.debug(
                    f"Broadcast {self.stream_id}: transcoder exited ({event.returncode}), "
                    f"{self.client_count} clients kept"
                )
            elif isinstance(event, Restarting):
                logger.debug(f"Broadcast {self.stream_id}: restart {event.attempt} in {event.delay:g}s")
            elif isinstance(event, Failed):
                logger.error(
                    f"Broadcast {self.stream_id}: transcoder failed {event.failures} times, "
                    "stream needs manual restart"
                )

    async def _handle_client(self, connection: ServerConnection) -> None:
        client = BroadcastClient(connection, asyncio.Queue(maxsize=self.client_queue_size))
        # Header goes first; the client only sees chunks relayed after it joined
        client.queue.put_nowait(self.build_header())
        self._clients.add(client)
        logger.info(f"Client {client.address} connected to {self.stream_id} ({self.client_count} total)")

        sender = asyncio.create_task(self._send_loop(client))
        try:
            # Clients have nothing to say; drain until the connection closes
            async for _ in connection:
                pass
        except ConnectionClosedError as e:
            logger.info(f"Client {client.address} on {self.stream_id} dropped: {e}")
        finally:
            self._clients.discard(client)
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            logger.info(
                f"Client {client.address} disconnected from {self.stream_id} "
                f"({self.client_count} total)"
            )

    async def _send_loop(self, client: BroadcastClient) -> None:
        try:
            while True:
                chunk = await client.queue.get()
                await client.connection.send(chunk)
        except ConnectionClosed:
            pass
        except OSError as e:
            logger.warning(f"Send to client {client.address} on {self.stream_id} failed: {e}")
