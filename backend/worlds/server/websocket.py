from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING
from uuid import uuid4

import structlog
from starlette.websockets import WebSocket, WebSocketDisconnect

from shared.logging import bind_connection_context, clear_connection_context
from worlds.messaging.encoder import DecodeError, decode
from worlds.messaging.protocol import ConnectionProtocol
from worlds.messaging.router import NOT_FOUND_CLOSE_CODE, WorldConnectionContext, send_rejection
from worlds.messaging.types import ErrorCode, ErrorMessage
from worlds.registry.manager import USER_ID_PARAM, ZONE_PARAM
from worlds.rooms.models import ConnectionState, Rejection

if TYPE_CHECKING:
    from worlds.messaging.router import MessageRouter
    from worlds.registry.manager import WorldRegistry
    from worlds.server.settings import HubServerSettings

logger = structlog.get_logger()

HANDSHAKE_TIMEOUT_CLOSE_CODE = 4008


class WebSocketConnection(ConnectionProtocol):
    def __init__(self, websocket: WebSocket, connection_id: str | None = None) -> None:
        self._websocket = websocket
        self._connection_id = connection_id or str(uuid4())

    @property
    def connection_id(self) -> str:
        return self._connection_id

    async def send_text(self, data: str) -> None:
        try:
            await self._websocket.send_text(data)
        except WebSocketDisconnect:
            raise ConnectionError("WebSocket already disconnected") from None

    async def receive_text(self) -> str:
        message = await self._websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise ConnectionError("WebSocket disconnected")
        text = message.get("text")
        if text is None:
            # Binary frames are decoded leniently and then fail envelope validation.
            text = (message.get("bytes") or b"").decode("utf-8", errors="replace")
        return text

    async def close(self, code: int = 1000, reason: str = "") -> None:
        with contextlib.suppress(WebSocketDisconnect, RuntimeError):
            await self._websocket.close(code=code, reason=reason)


async def world_websocket(websocket: WebSocket) -> None:
    """Serve one world connection: handshake, join, message loop, leave."""
    registry: WorldRegistry = websocket.app.state.registry
    router: MessageRouter = websocket.app.state.message_router
    settings: HubServerSettings = websocket.app.state.settings

    path = websocket.url.path
    result = registry.resolve(path, websocket.query_params)
    if isinstance(result, Rejection) and result.reason is ErrorCode.NOT_FOUND:
        # Refused at the transport boundary: no room state is touched.
        logger.info("handshake rejected", path=path, reason=result.reason)
        await websocket.close(code=NOT_FOUND_CLOSE_CODE, reason=result.reason.value)
        return

    await websocket.accept()
    connection = WebSocketConnection(websocket)

    if isinstance(result, Rejection):
        logger.info("handshake rejected", path=path, reason=result.reason, connection_id=connection.connection_id)
        await send_rejection(connection, result)
        return

    ctx = WorldConnectionContext(
        connection=connection,
        room=result,
        user_id=websocket.query_params[USER_ID_PARAM],
        zone=websocket.query_params.get(ZONE_PARAM) or None,
    )
    bind_connection_context(connection_id=connection.connection_id, world_id=result.world_id, user_id=ctx.user_id)
    logger.info("world connection opened")

    reason = "disconnected"
    try:
        await _await_join(ctx, router, settings.handshake_timeout_seconds)
        await _message_loop(ctx, router)
    except ConnectionError:
        pass
    except Exception:
        logger.exception("unexpected error in world websocket")
        reason = "error"
    finally:
        await router.handle_disconnect(ctx, reason=reason)
        logger.info("world connection closed", state=ctx.state)
        clear_connection_context()


async def _await_join(ctx: WorldConnectionContext, router: MessageRouter, timeout: float) -> None:
    """Process messages until the connection joins, is rejected, or the handshake window closes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while ctx.state is ConnectionState.HANDSHAKING:
        try:
            raw = await asyncio.wait_for(ctx.connection.receive_text(), timeout=max(deadline - loop.time(), 0))
        except TimeoutError:
            logger.info("handshake timed out", timeout=timeout)
            ctx.state = ConnectionState.DISCONNECTED
            await ctx.connection.close(code=HANDSHAKE_TIMEOUT_CLOSE_CODE, reason="handshake_timeout")
            return
        await _dispatch(ctx, router, raw)


async def _message_loop(ctx: WorldConnectionContext, router: MessageRouter) -> None:
    while not ctx.state.is_terminal:
        raw = await ctx.connection.receive_text()
        await _dispatch(ctx, router, raw)


async def _dispatch(ctx: WorldConnectionContext, router: MessageRouter, raw: str) -> None:
    # Malformed frames are answered and dropped; the connection stays open.
    try:
        data = decode(raw)
    except DecodeError as e:
        logger.warning("decode error", error=str(e))
        await ctx.send(ErrorMessage(code=ErrorCode.INVALID_MESSAGE, message=str(e)).to_wire())
        return
    await router.handle_message(ctx, data)
