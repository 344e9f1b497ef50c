from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from worlds.messaging.types import (
    ChatMessage,
    ErrorCode,
    ErrorMessage,
    JoinWorldMessage,
    LeaveWorldMessage,
    PingMessage,
    PongMessage,
    SwitchZoneMessage,
    UpdatePlayerMessage,
    parse_client_message,
)
from worlds.rooms.models import ConnectionState, Rejection

if TYPE_CHECKING:
    from worlds.messaging.protocol import ConnectionProtocol
    from worlds.rooms.models import Session
    from worlds.rooms.room import Room

logger = structlog.get_logger()

# Close codes for rejected world connections.
REJECTED_CLOSE_CODE = 4000
NOT_FOUND_CLOSE_CODE = 4004


async def send_rejection(connection: ConnectionProtocol, rejection: Rejection) -> None:
    """Tell the client why, then close. Nothing exists for a rejected connection."""
    code = NOT_FOUND_CLOSE_CODE if rejection.reason is ErrorCode.NOT_FOUND else REJECTED_CLOSE_CODE
    try:
        await connection.send_message(ErrorMessage(code=rejection.reason, message=rejection.reason.value).to_wire())
    except (ConnectionError, RuntimeError):
        return
    await connection.close(code=code, reason=rejection.reason.value)


@dataclass
class WorldConnectionContext:
    """Per-connection state for a world WebSocket, from handshake to disconnect."""

    connection: ConnectionProtocol
    room: Room
    user_id: str  # identity from the handshake
    zone: str | None = None  # initial zone from the handshake
    state: ConnectionState = ConnectionState.HANDSHAKING
    session: Session | None = None

    @property
    def connection_id(self) -> str:
        return self.connection.connection_id

    async def send(self, message: dict[str, Any]) -> None:
        """Send to this connection only.

        Once joined, the session outbox is the connection's only writer, so
        direct replies go through it to keep ordering with broadcasts.
        """
        if self.session is not None:
            self.session.outbox.send(message)
        else:
            await self.connection.send_message(message)


class MessageRouter:
    """
    Routes incoming world messages to Room operations by message kind.

    Contains no transport code, so it can be driven by MockConnection in tests.
    """

    async def handle_message(self, ctx: WorldConnectionContext, raw_message: dict[str, Any]) -> None:
        try:
            message = parse_client_message(raw_message)
        except (ValidationError, ValueError, TypeError) as e:
            logger.warning("invalid message", connection_id=ctx.connection_id, error=str(e))
            await ctx.send(ErrorMessage(code=ErrorCode.INVALID_MESSAGE, message=str(e)).to_wire())
            return

        if isinstance(message, JoinWorldMessage):
            await self._handle_join(ctx, message)
        elif isinstance(message, PingMessage):
            await ctx.send(PongMessage().to_wire())
        elif ctx.session is None:
            # Not joined (yet, or any more): nothing to act on.
            return
        elif isinstance(message, UpdatePlayerMessage):
            await ctx.room.update(ctx.session.session_id, message.fields)
        elif isinstance(message, SwitchZoneMessage):
            await ctx.room.switch_zone(ctx.session.session_id, message.zone_name)
        elif isinstance(message, ChatMessage):
            await ctx.room.chat(ctx.session.session_id, message.message)
        elif isinstance(message, LeaveWorldMessage):
            await self._handle_leave(ctx)

    async def _handle_join(self, ctx: WorldConnectionContext, message: JoinWorldMessage) -> None:
        if not message.user_id:
            logger.debug("join without userID dropped", connection_id=ctx.connection_id)
            return
        if ctx.state is ConnectionState.JOINED:
            await ctx.send(
                ErrorMessage(code=ErrorCode.ALREADY_JOINED, message="Already joined this world").to_wire(),
            )
            return
        if message.user_id != ctx.user_id or (message.world_id is not None and message.world_id != ctx.room.world_id):
            await self.reject(ctx, Rejection(ErrorCode.INVALID_HANDSHAKE))
            return

        result = await ctx.room.join(
            ctx.connection,
            ctx.user_id,
            appearance=message.appearance,
            position={"x": message.x, "y": message.y},
            zone=message.zone or ctx.zone,
            username=message.username,
        )
        if isinstance(result, Rejection):
            await self.reject(ctx, result)
            return

        ctx.session = result
        ctx.state = ConnectionState.JOINED

    async def _handle_leave(self, ctx: WorldConnectionContext) -> None:
        """Explicit leave: remove the session, then close normally."""
        session = ctx.session
        if session is None:  # pragma: no cover
            return
        await ctx.room.leave(session.session_id, reason="left")
        ctx.session = None
        ctx.state = ConnectionState.DISCONNECTED
        await ctx.connection.close(code=1000, reason="left")

    async def reject(self, ctx: WorldConnectionContext, rejection: Rejection) -> None:
        logger.info("join rejected", connection_id=ctx.connection_id, reason=rejection.reason)
        ctx.state = ConnectionState.REJECTED
        await send_rejection(ctx.connection, rejection)

    async def handle_disconnect(self, ctx: WorldConnectionContext, reason: str = "disconnected") -> None:
        """Run the leave path exactly once, whichever code path noticed the disconnect."""
        session = ctx.session
        ctx.session = None
        if ctx.state is not ConnectionState.REJECTED:
            ctx.state = ConnectionState.DISCONNECTED
        if session is not None:
            await ctx.room.leave(session.session_id, reason=reason)
