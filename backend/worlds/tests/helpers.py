"""Shared builders for world tests."""

import asyncio

from worlds.registry.manager import WorldRegistry
from worlds.registry.types import World
from worlds.rooms.models import Session
from worlds.rooms.presence import PresenceIndex
from worlds.rooms.room import Room
from worlds.tests.mocks import MockConnection


def make_world(
    world_id: str = "world-town-1",
    path: str = "/worlds/town",
    capacity: int = 100,
    meta: dict | None = None,
) -> World:
    return World(id=world_id, name=world_id.title(), path=path, capacity=capacity, meta=meta or {})


def make_room(capacity: int = 100, *, presence: PresenceIndex | None = None, world_id: str = "world-town-1") -> Room:
    return Room(
        make_world(world_id, f"/worlds/{world_id}", capacity),
        presence=presence if presence is not None else PresenceIndex(),
    )


def make_registry(**kwargs) -> WorldRegistry:
    return WorldRegistry(
        [
            make_world("world-fireplane-1", "/worlds/fireplane", capacity=10),
            make_world("world-icepeak-1", "/worlds/icepeak", capacity=2, meta={"tag": "ice"}),
            make_world("world-town-1", "/worlds/town", capacity=100),
        ],
        **kwargs,
    )


async def join(room: Room, user_id: str, **kwargs) -> tuple[MockConnection, Session]:
    """Join a fresh MockConnection and return it with its session. Fails the test on rejection."""
    conn = MockConnection(f"conn-{user_id}")
    result = await room.join(conn, user_id, **kwargs)
    assert isinstance(result, Session), f"join rejected: {result}"
    return conn, result


async def settle(room: Room) -> None:
    """Wait for deferred leaves to finish and every outbox to drain."""
    await room.flush()
    while room._pending_leaves:
        await asyncio.gather(*list(room._pending_leaves))
        await room.flush()
