"""Tests for the WebSocket broadcast server."""

import asyncio
from dataclasses import replace
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from src.streaming import StreamDefinition
from src.streaming.broadcast import BroadcastClient, BroadcastServer
from src.streaming.protocol import encode_header
from src.streaming.supervisor import ProcessState
from tests.helpers import decode_counters, parse_header, wait_for


@pytest_asyncio.fixture
async def make_server(config, log_manager, tmp_path):
    servers = []

    def factory(transcoder_path=None, **definition_changes) -> BroadcastServer:
        definition = StreamDefinition(
            id="cam1", source_url="rtsp://cam/1", segment_dir=tmp_path / "cam1", port=0
        )
        definition = replace(definition, **definition_changes)
        server_config = replace(config, transcoder_path=transcoder_path or config.transcoder_path)
        server = BroadcastServer(definition, server_config, log_manager)
        servers.append(server)
        return server

    yield factory

    for server in servers:
        await server.stop()
        await server.supervisor.wait_closed()


async def read_counters(ws, until: int) -> list[int]:
    """Receive until counter ``until`` has been seen."""
    counters: list[int] = []
    while not counters or counters[-1] < until:
        counters.extend(decode_counters(await asyncio.wait_for(ws.recv(), 5.0)))
    return counters


class TestBroadcastServer:

    @pytest.mark.asyncio
    async def test_clients_get_header_then_identical_payload(self, make_server):
        server = make_server()
        await server.start()
        await wait_for(lambda: server.width == 320)

        async with connect(server.url) as a, connect(server.url) as b, connect(server.url) as c:
            clients = (a, b, c)
            headers = [await asyncio.wait_for(ws.recv(), 5.0) for ws in clients]
            assert headers == [encode_header(320, 240)] * 3
            await wait_for(lambda: server.client_count == 3)

            first = [decode_counters(await asyncio.wait_for(ws.recv(), 5.0)) for ws in clients]
            start = max(counters[0] for counters in first)
            target = start + 5

            for ws, counters in zip(clients, first):
                counters += await read_counters(ws, target)
                # Production order, nothing skipped
                assert counters == list(range(counters[0], counters[0] + len(counters)))
                assert set(range(start, target + 1)) <= set(counters)

    @pytest.mark.asyncio
    async def test_configured_size_in_header(self, make_server):
        server = make_server(width=800, height=600)
        await server.start()

        async with connect(server.url) as ws:
            header = await asyncio.wait_for(ws.recv(), 5.0)

        assert parse_header(header) == (800, 600)

    @pytest.mark.asyncio
    async def test_unknown_size_uses_default_header(self, make_server, make_transcoder):
        server = make_server(transcoder_path=make_transcoder(size=None))
        await server.start()
        await wait_for(lambda: server.supervisor.bytes_out > 0)

        async with connect(server.url) as ws:
            header = await asyncio.wait_for(ws.recv(), 5.0)

        assert parse_header(header) == (640, 480)

    @pytest.mark.asyncio
    async def test_url_reports_bound_port(self, make_server):
        server = make_server()
        assert server.port == 0

        await server.start()

        assert server.port > 0
        assert server.url == f"ws://127.0.0.1:{server.port}"
        assert server.is_running is True

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, make_server):
        server = make_server()

        assert await server.start() is True
        port = server.port
        assert await server.start() is False
        assert server.port == port

    @pytest.mark.asyncio
    async def test_client_disconnect_removes_client(self, make_server):
        server = make_server()
        await server.start()

        async with connect(server.url) as ws:
            await ws.recv()
            await wait_for(lambda: server.client_count == 1)

        await wait_for(lambda: server.client_count == 0)

    @pytest.mark.asyncio
    async def test_stop_closes_clients_and_port(self, make_server):
        server = make_server()
        await server.start()
        url = server.url

        ws = await connect(url)
        await ws.recv()
        await server.stop()

        with pytest.raises(ConnectionClosed):
            while True:
                await asyncio.wait_for(ws.recv(), 5.0)

        with pytest.raises(OSError):
            await connect(url, open_timeout=2)

        assert server.is_listening is False
        assert server.state == ProcessState.STOPPED

    @pytest.mark.asyncio
    async def test_clients_survive_transcoder_restart(self, make_server, make_transcoder):
        server = make_server(transcoder_path=make_transcoder(chunks=20, exit_code=1))
        server.supervisor.max_consecutive_failures = 0
        await server.start()

        async with connect(server.url) as ws:
            await ws.recv()
            await wait_for(lambda: server.supervisor.restarts >= 1)
            # Counters start again from zero after the restart
            received: list[int] = []
            while 0 not in received[1:] and len(received) < 200:
                received += decode_counters(await asyncio.wait_for(ws.recv(), 5.0))

            assert server.client_count == 1
            assert ws.state is State.OPEN


class TestRelay:

    def test_full_client_queue_drops_chunks(self, config, tmp_path):
        definition = StreamDefinition(id="cam1", source_url="rtsp://cam/1", segment_dir=tmp_path)
        server = BroadcastServer(definition, config)
        connection = MagicMock()
        connection.state = State.OPEN
        client = BroadcastClient(connection, asyncio.Queue(maxsize=1))
        server._clients.add(client)

        server.broadcast(b"a")
        server.broadcast(b"b")

        assert client.queue.get_nowait() == b"a"
        assert client.dropped == 1
        assert server.chunks_dropped == 1
        assert server.bytes_relayed == 2

    def test_closing_clients_skipped(self, config, tmp_path):
        definition = StreamDefinition(id="cam1", source_url="rtsp://cam/1", segment_dir=tmp_path)
        server = BroadcastServer(definition, config)
        connection = MagicMock()
        connection.state = State.CLOSING
        client = BroadcastClient(connection, asyncio.Queue())
        server._clients.add(client)

        server.broadcast(b"a")

        assert client.queue.empty()
