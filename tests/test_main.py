"""Tests for boot-time stream loading."""

import json
import signal

import pytest
import uvicorn
from pydantic import ValidationError

import main
from main import auto_start_streams, load_streams_file
from src.streaming import StreamManager


class TestStreamsFile:

    def test_load(self, tmp_path):
        path = tmp_path / "streams.json"
        path.write_text(json.dumps([
            {"id": "cam1", "source_url": "rtsp://cam/1"},
            {"id": "cam2", "source_url": "rtsp://cam/2", "quality": "high", "autostart": False},
        ]))

        entries = load_streams_file(path)

        assert [e.id for e in entries] == ["cam1", "cam2"]
        assert entries[0].autostart is True
        assert entries[1].quality == "high"

    def test_invalid_entry(self, tmp_path):
        path = tmp_path / "streams.json"
        path.write_text(json.dumps([{"id": "cam1"}]))

        with pytest.raises(ValidationError):
            load_streams_file(path)

    @pytest.mark.asyncio
    async def test_auto_start(self, tmp_path, config, log_manager):
        path = tmp_path / "streams.json"
        path.write_text(json.dumps([
            {"id": "cam1", "source_url": "rtsp://cam/1"},
            {"id": "cam2", "source_url": "rtsp://cam/2", "autostart": False},
        ]))
        manager = StreamManager(config, log_manager)

        try:
            await auto_start_streams(manager, str(path))

            assert manager.get_stream_info("cam1")["status"] == "running"
            assert manager.get_stream_info("cam2")["status"] == "stopped"
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_missing_file_ignored(self, tmp_path, config, log_manager):
        manager = StreamManager(config, log_manager)

        await auto_start_streams(manager, str(tmp_path / "missing.json"))

        assert len(manager) == 0

    @pytest.mark.asyncio
    async def test_bad_entry_does_not_block_others(self, tmp_path, config, log_manager):
        path = tmp_path / "streams.json"
        path.write_text(json.dumps([
            {"id": "bad", "source_url": "rtsp://cam/1\u0000x"},
            {"id": "good", "source_url": "rtsp://cam/2"},
        ]))
        manager = StreamManager(config, log_manager)

        try:
            await auto_start_streams(manager, str(path))

            assert "bad" not in manager
            assert manager.get_stream_info("good")["status"] == "running"
        finally:
            await manager.stop()


class TestSignals:

    def test_signal_asks_server_to_exit(self, monkeypatch):
        server = uvicorn.Server(uvicorn.Config(app=None))
        monkeypatch.setattr(main, "http_server", server)

        main.handle_signal(signal.SIGTERM)

        assert server.should_exit is True

    def test_signal_before_server_exists(self, monkeypatch):
        monkeypatch.setattr(main, "http_server", None)

        main.handle_signal(signal.SIGINT)
