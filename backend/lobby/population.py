"""Population aggregator: world fullness for lobby subscribers."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from worlds.messaging.types import WorldListMessage, WorldListUpdateMessage, WorldSummary
from worlds.rooms.broadcast import DEFAULT_SEND_TIMEOUT, Outbox, broadcast

if TYPE_CHECKING:
    from worlds.messaging.protocol import ConnectionProtocol
    from worlds.registry.manager import WorldRegistry
    from worlds.rooms.room import Room

logger = structlog.get_logger()

# Lobby pushes are full snapshots, so a subscriber that falls this far
# behind is better dropped than buffered.
LOBBY_MAX_QUEUE_SIZE = 32


def summarize(room: Room) -> WorldSummary:
    world = room.world
    return WorldSummary(
        id=world.id,
        name=world.name,
        path=world.path,
        population=room.population,
        capacity=room.capacity,
        fullness=room.fullness,
        meta=dict(world.meta),
    )


class PopulationAggregator:
    """Derive per-world population from live membership and push it to the lobby.

    Holds no counters of its own: every snapshot reads room sizes directly,
    so it cannot drift from membership. Registers itself as a membership
    listener on every room, which runs inside the room's critical section
    right after the change.
    """

    def __init__(
        self,
        registry: WorldRegistry,
        *,
        outbox_max_size: int = LOBBY_MAX_QUEUE_SIZE,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._outbox_max_size = outbox_max_size
        self._send_timeout = send_timeout
        self._subscribers: dict[str, Outbox] = {}  # connection_id -> Outbox
        registry.add_membership_listener(self.on_membership_changed)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def snapshot(self) -> list[WorldSummary]:
        """Population of every world, in registration order."""
        return [summarize(room) for room in self._registry.rooms]

    def subscribe(self, connection: ConnectionProtocol) -> Outbox:
        """Start pushing population updates to a connection, beginning with the current list."""
        outbox = Outbox(
            connection,
            max_size=self._outbox_max_size,
            send_timeout=self._send_timeout,
            on_failure=self._drop,
        )
        self._subscribers[connection.connection_id] = outbox
        outbox.start()
        outbox.send(WorldListMessage(worlds=self.snapshot()).to_wire())
        logger.info("lobby subscriber added", connection_id=connection.connection_id, subscribers=self.subscriber_count)
        return outbox

    async def unsubscribe(self, connection_id: str) -> None:
        outbox = self._subscribers.pop(connection_id, None)
        if outbox is None:
            return
        await outbox.close()
        logger.info("lobby subscriber removed", connection_id=connection_id, subscribers=self.subscriber_count)

    def on_membership_changed(self, room: Room) -> None:
        """Push the full snapshot, not just the changed world: lobby UIs compare across worlds."""
        worlds = self.snapshot()
        delivered = broadcast(self._subscribers.values(), WorldListUpdateMessage(worlds=worlds).to_wire())
        logger.debug(
            "population pushed",
            world_id=room.world_id,
            population=room.population,
            subscribers=delivered,
        )

    async def flush(self) -> None:
        for outbox in list(self._subscribers.values()):
            await outbox.flush()

    def _drop(self, connection_id: str) -> None:
        self._subscribers.pop(connection_id, None)
