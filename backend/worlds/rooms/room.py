"""Live room for one world: membership, session lifecycle and scoped broadcast."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog

from worlds.messaging.types import (
    RESERVED_PLAYER_FIELDS,
    ChatRelayMessage,
    ErrorCode,
    PlayerJoinedMessage,
    PlayerListMessage,
    PlayerLeftMessage,
    PlayerMovedMessage,
    PlayerUpdateMessage,
    WorldJoinedConfirmedMessage,
)
from worlds.rooms.broadcast import DEFAULT_MAX_QUEUE_SIZE, DEFAULT_SEND_TIMEOUT, Outbox, broadcast
from worlds.rooms.models import DEFAULT_USERNAME, DEFAULT_ZONE, Rejection, Session, position_fields

if TYPE_CHECKING:
    from collections.abc import Iterator

    from worlds.messaging.protocol import ConnectionProtocol
    from worlds.registry.types import World
    from worlds.rooms.presence import PresenceIndex

logger = structlog.get_logger()

MembershipListener = Callable[["Room"], None]


class Room:
    """Authoritative membership of one world.

    Every operation that reads or mutates membership, or mutates a session,
    runs under ``_lock``; broadcasts are enqueued inside the same critical
    section, so peers observe join, updates and leave in the order they were
    applied. Rooms share nothing but the presence index, whose methods never
    await.
    """

    def __init__(
        self,
        world: World,
        *,
        presence: PresenceIndex,
        outbox_max_size: int = DEFAULT_MAX_QUEUE_SIZE,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> None:
        self.world = world
        self._presence = presence
        self._outbox_max_size = outbox_max_size
        self._send_timeout = send_timeout
        self._members: dict[str, Session] = {}  # session_id -> Session
        self._lock = asyncio.Lock()
        self._listeners: list[MembershipListener] = []
        self._pending_leaves: set[asyncio.Task[bool]] = set()

    # --- Read side ---

    @property
    def world_id(self) -> str:
        return self.world.id

    @property
    def capacity(self) -> int:
        return self.world.capacity

    @property
    def population(self) -> int:
        return len(self._members)

    @property
    def fullness(self) -> float:
        return self.population / self.capacity

    @property
    def is_full(self) -> bool:
        return self.population >= self.capacity

    def get_session(self, session_id: str) -> Session | None:
        return self._members.get(session_id)

    def has_user(self, user_id: str) -> bool:
        return any(s.user_id == user_id for s in self._members.values())

    def add_listener(self, listener: MembershipListener) -> None:
        """Register a callback run inside the critical section after every membership change."""
        self._listeners.append(listener)

    # --- Operations ---

    async def join(
        self,
        connection: ConnectionProtocol,
        user_id: str,
        *,
        appearance: Any = None,
        position: dict[str, Any] | None = None,
        zone: str | None = None,
        username: str | None = None,
    ) -> Session | Rejection:
        """Admit a player, or reject with DUPLICATE_IDENTITY / WORLD_FULL.

        An identity with a live session anywhere is rejected rather than
        replacing the old session; the stale one is removed by its own
        disconnect.
        """
        log = logger.bind(world_id=self.world_id, user_id=user_id, connection_id=connection.connection_id)
        async with self._lock:
            if self._presence.is_present(user_id):
                log.info("join rejected", reason=ErrorCode.DUPLICATE_IDENTITY, live_in=self._presence.world_of(user_id))
                return Rejection(ErrorCode.DUPLICATE_IDENTITY)
            if self.is_full:
                log.info("join rejected", reason=ErrorCode.WORLD_FULL, capacity=self.capacity)
                return Rejection(ErrorCode.WORLD_FULL)

            self._presence.claim(user_id, self.world_id)
            outbox = Outbox(
                connection,
                max_size=self._outbox_max_size,
                send_timeout=self._send_timeout,
                on_failure=self._schedule_leave,
            )
            session = Session(
                connection=connection,
                outbox=outbox,
                user_id=user_id,
                world_id=self.world_id,
                zone=zone or DEFAULT_ZONE,
                username=username or DEFAULT_USERNAME,
                appearance={} if appearance is None else appearance,
                position=position_fields(position or {}),
            )
            existing = list(self._members.values())
            self._members[session.session_id] = session
            outbox.start()

            joined = PlayerJoinedMessage.model_validate(session.to_player_info().to_wire())
            broadcast((s.outbox for s in existing), joined.to_wire())
            outbox.send(
                WorldJoinedConfirmedMessage(
                    world_id=self.world_id,
                    zone_id=session.zone,
                    message=f"Welcome to {self.world.name}, {session.username}!",
                ).to_wire(),
            )
            outbox.send(PlayerListMessage(players=[s.to_player_info() for s in existing]).to_wire())

            log.info("player joined world", population=self.population, zone=session.zone)
            self._notify_membership_changed()
        return session

    async def update(self, session_id: str, fields: dict[str, Any]) -> None:
        """Overwrite the caller's own appearance/position and relay it to everyone else."""
        async with self._lock:
            session = self._members.get(session_id)
            if session is None:
                return
            fields = {k: v for k, v in fields.items() if k not in RESERVED_PLAYER_FIELDS}
            session.apply_update(fields)
            message = PlayerUpdateMessage(user_id=session.user_id, **fields)
            broadcast(self._outboxes(), message.to_wire(), exclude=session_id)

    async def switch_zone(self, session_id: str, zone: str) -> None:
        async with self._lock:
            session = self._members.get(session_id)
            if session is None:
                return
            session.zone = zone
            logger.debug("player switched zone", world_id=self.world_id, user_id=session.user_id, zone=zone)
            broadcast(
                self._outboxes(),
                PlayerMovedMessage(user_id=session.user_id, new_zone=zone).to_wire(),
                exclude=session_id,
            )

    async def chat(self, session_id: str, text: str) -> None:
        """Relay chat to every member, the sender included."""
        async with self._lock:
            session = self._members.get(session_id)
            if session is None:
                return
            broadcast(self._outboxes(), ChatRelayMessage(user_id=session.user_id, message=text).to_wire())

    async def leave(self, session_id: str, reason: str = "disconnected") -> bool:
        """Remove a session. Return False if it was already gone (repeat calls are no-ops)."""
        async with self._lock:
            session = self._members.pop(session_id, None)
            if session is None:
                return False
            self._presence.release(session.user_id, self.world_id)
            broadcast(self._outboxes(), PlayerLeftMessage(user_id=session.user_id, reason=reason).to_wire())
            logger.info(
                "player left world",
                world_id=self.world_id,
                user_id=session.user_id,
                population=self.population,
                reason=reason,
            )
            self._notify_membership_changed()
            # Last, so a cancelled disconnect handler still leaves membership consistent.
            await session.outbox.close()
        return True

    async def flush(self) -> None:
        """Wait until every member has been sent everything queued for it so far."""
        await asyncio.gather(*(s.outbox.flush() for s in list(self._members.values())))

    async def close_all(self, code: int = 1001, reason: str = "server_shutdown") -> None:
        """Close every member connection; each receive loop then runs the normal leave path.

        The outbox is stopped first so its writer cannot interleave with the close frame.
        """
        for session in list(self._members.values()):
            await session.outbox.close()
            with contextlib.suppress(ConnectionError, RuntimeError, OSError):
                await session.connection.close(code=code, reason=reason)

    # --- Internals ---

    def _outboxes(self) -> Iterator[Outbox]:
        return (s.outbox for s in self._members.values())

    def _notify_membership_changed(self) -> None:
        for listener in self._listeners:
            try:
                listener(self)
            except Exception:
                logger.exception("membership listener failed", world_id=self.world_id)

    def _schedule_leave(self, session_id: str) -> None:
        """Run the normal leave path for a recipient whose delivery failed.

        Called from inside a broadcast, so the leave is deferred to a task
        that waits for the lock instead of re-entering it.
        """
        task = asyncio.create_task(self.leave(session_id, reason="delivery_failed"))
        self._pending_leaves.add(task)
        task.add_done_callback(self._pending_leaves.discard)
