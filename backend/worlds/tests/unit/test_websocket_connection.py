from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.websockets import WebSocketDisconnect

from worlds.server.websocket import WebSocketConnection


def make_websocket(**receive) -> MagicMock:
    websocket = MagicMock()
    websocket.send_text = AsyncMock()
    websocket.close = AsyncMock()
    websocket.receive = AsyncMock(return_value={"type": "websocket.receive", **receive})
    return websocket


class TestWebSocketConnection:
    def test_generates_connection_id(self):
        first = WebSocketConnection(make_websocket())
        second = WebSocketConnection(make_websocket())

        assert first.connection_id != second.connection_id

    def test_explicit_connection_id(self):
        assert WebSocketConnection(make_websocket(), connection_id="conn-1").connection_id == "conn-1"

    async def test_receive_text(self):
        connection = WebSocketConnection(make_websocket(text='{"type": "ping"}'))

        assert await connection.receive_text() == '{"type": "ping"}'

    async def test_receive_bytes_decoded_leniently(self):
        connection = WebSocketConnection(make_websocket(bytes=b"\xff{}"))

        assert await connection.receive_text() == "�{}"

    async def test_receive_disconnect_raises_connection_error(self):
        websocket = make_websocket()
        websocket.receive = AsyncMock(return_value={"type": "websocket.disconnect", "code": 1000})
        connection = WebSocketConnection(websocket)

        with pytest.raises(ConnectionError):
            await connection.receive_text()

    async def test_send_after_disconnect_raises_connection_error(self):
        websocket = make_websocket()
        websocket.send_text = AsyncMock(side_effect=WebSocketDisconnect(1006))
        connection = WebSocketConnection(websocket)

        with pytest.raises(ConnectionError):
            await connection.send_text("{}")

    async def test_send_message_encodes_json(self):
        websocket = make_websocket()
        connection = WebSocketConnection(websocket)

        await connection.send_message({"type": "pong"})

        websocket.send_text.assert_awaited_once_with('{"type": "pong"}')

    async def test_close_tolerates_closed_socket(self):
        websocket = make_websocket()
        websocket.close = AsyncMock(side_effect=RuntimeError("already closed"))
        connection = WebSocketConnection(websocket)

        await connection.close(code=4000, reason="world_full")

        websocket.close.assert_awaited_once_with(code=4000, reason="world_full")
