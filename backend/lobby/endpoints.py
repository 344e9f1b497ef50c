"""Lobby endpoints: population push over WebSocket and the polling snapshot."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError
from starlette.responses import JSONResponse

from lobby.messages import LobbyPingMessage, LobbyRefreshMessage, parse_lobby_message
from worlds.messaging.encoder import DecodeError, decode
from worlds.messaging.types import ErrorCode, ErrorMessage, PongMessage, WorldListMessage
from worlds.server.websocket import WebSocketConnection

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.websockets import WebSocket

    from lobby.population import PopulationAggregator
    from worlds.rooms.broadcast import Outbox

logger = structlog.get_logger()


async def list_worlds(request: Request) -> JSONResponse:
    population: PopulationAggregator = request.app.state.population
    return JSONResponse({"worlds": [w.to_wire() for w in population.snapshot()]})


async def lobby_websocket(websocket: WebSocket) -> None:
    """Subscribe a lobby client to population pushes until it disconnects."""
    population: PopulationAggregator = websocket.app.state.population

    await websocket.accept()
    connection = WebSocketConnection(websocket)
    outbox = population.subscribe(connection)

    try:
        while outbox.is_open:
            raw = await connection.receive_text()
            _handle_lobby_message(raw, outbox, population)
    except ConnectionError:
        pass
    except Exception:
        logger.exception("unexpected error in lobby websocket", connection_id=connection.connection_id)
    finally:
        await population.unsubscribe(connection.connection_id)


def _handle_lobby_message(raw: str, outbox: Outbox, population: PopulationAggregator) -> None:
    try:
        message = parse_lobby_message(decode(raw))
    except (DecodeError, ValidationError) as e:
        logger.warning("invalid lobby message", connection_id=outbox.connection_id, error=str(e))
        outbox.send(ErrorMessage(code=ErrorCode.INVALID_MESSAGE, message=str(e)).to_wire())
        return

    if isinstance(message, LobbyPingMessage):
        outbox.send(PongMessage().to_wire())
    elif isinstance(message, LobbyRefreshMessage):
        outbox.send(WorldListMessage(worlds=population.snapshot()).to_wire())
