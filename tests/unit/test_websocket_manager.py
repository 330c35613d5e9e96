"""Unit tests for WebSocketManager service."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from services.websocket_manager import JOB_UPDATE, LIBRARY_UPDATE, WebSocketManager


def _ws() -> MagicMock:
    ws = MagicMock()
    ws.accept = AsyncMock()
    ws.send_json = AsyncMock()
    return ws


class TestConnect:
    """Tests for connect and disconnect."""

    @pytest.mark.asyncio
    async def test_connect_accepts_and_registers(self) -> None:
        manager = WebSocketManager()
        ws = _ws()

        await manager.connect(ws, "conversion")

        ws.accept.assert_called_once()
        assert manager.is_connected("conversion")

    @pytest.mark.asyncio
    async def test_disconnect_removes_empty_channel(self) -> None:
        manager = WebSocketManager()
        ws = _ws()
        await manager.connect(ws, "conversion")

        manager.disconnect(ws, "conversion")

        assert not manager.is_connected("conversion")
        assert "conversion" not in manager._connections

    def test_disconnect_unknown_is_noop(self) -> None:
        manager = WebSocketManager()

        manager.disconnect(_ws(), "nothing")

        assert manager._connections == {}


class TestSend:
    """Tests for message delivery."""

    @pytest.mark.asyncio
    async def test_send_without_connections(self) -> None:
        manager = WebSocketManager()

        assert await manager.send_personal_message({"type": "x"}, "conversion") is False

    @pytest.mark.asyncio
    async def test_failed_socket_is_dropped(self) -> None:
        manager = WebSocketManager()
        good, bad = _ws(), _ws()
        bad.send_json.side_effect = RuntimeError("closed")
        await manager.connect(good, "conversion")
        await manager.connect(bad, "conversion")

        assert await manager.send_personal_message({"type": "x"}, "conversion") is True

        good.send_json.assert_awaited_once_with({"type": "x"})
        assert manager._connections["conversion"] == {good}

    @pytest.mark.asyncio
    async def test_broadcast_reaches_all_channels(self) -> None:
        manager = WebSocketManager()
        a, b = _ws(), _ws()
        await manager.connect(a, "conversion")
        await manager.connect(b, "library")

        await manager.broadcast({"type": "ping"})

        a.send_json.assert_awaited_once()
        b.send_json.assert_awaited_once()


class TestPublish:
    """Tests for fire-and-forget publishing."""

    @pytest.mark.asyncio
    async def test_publish_job_status(self) -> None:
        manager = WebSocketManager()
        ws = _ws()
        await manager.connect(ws, "conversion")

        manager.publish_job_status("conversion", "converting", {"job_id": "abc", "progress": 42})
        await manager.drain()

        ws.send_json.assert_awaited_once_with(
            {
                "type": JOB_UPDATE,
                "job_type": "conversion",
                "status": "converting",
                "job_id": "abc",
                "progress": 42,
            }
        )

    @pytest.mark.asyncio
    async def test_publish_library_changed(self) -> None:
        manager = WebSocketManager()
        ws = _ws()
        await manager.connect(ws, "conversion")

        manager.publish_library_changed({"id": 1, "title": "Book", "author": None})
        await manager.drain()

        ws.send_json.assert_awaited_once_with(
            {"type": LIBRARY_UPDATE, "audiobook": {"id": 1, "title": "Book", "author": None}}
        )

    def test_publish_without_loop_is_dropped(self) -> None:
        manager = WebSocketManager()

        manager.publish_job_status("conversion", "queued", {"job_id": "abc"})

        assert manager._pending == set()
