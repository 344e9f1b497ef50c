from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import structlog
import yaml

from worlds.messaging.types import ErrorCode
from worlds.registry.types import DEFAULT_CAPACITY, World, normalize_path
from worlds.rooms.broadcast import DEFAULT_MAX_QUEUE_SIZE, DEFAULT_SEND_TIMEOUT
from worlds.rooms.models import Rejection
from worlds.rooms.presence import PresenceIndex
from worlds.rooms.room import MembershipListener, Room

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

logger = structlog.get_logger()

# Handshake query parameters.
USER_ID_PARAM = "userId"
WORLD_ID_PARAM = "worldId"
ZONE_PARAM = "zone"

DEFAULT_WORLDS: tuple[World, ...] = (
    World(
        id="world-fireplane-1",
        name="Fireplane",
        path="/worlds/fireplane",
        meta={"tag": "fire", "description": "A volcanic land"},
    ),
    World(
        id="world-icepeak-1",
        name="Icepeak",
        path="/worlds/icepeak",
        meta={"tag": "ice", "description": "Frozen mountains"},
    ),
    World(
        id="world-mystic-1",
        name="Mystic Realm",
        path="/worlds/mystic",
        meta={"tag": "magic", "description": "Enchanted forests"},
    ),
    World(
        id="world-town-1",
        name="Town Square",
        path="/worlds/town",
        meta={"tag": "town", "description": "The bustling central hub"},
    ),
)


def _get_default_config_path() -> Path:
    """Return the file-relative default path to worlds.yaml."""
    backend_root = Path(__file__).parent.parent.parent
    return backend_root / "config" / "worlds.yaml"


def load_worlds(config_path: Path | None = None, *, default_capacity: int = DEFAULT_CAPACITY) -> list[World]:
    """Read world definitions from YAML; fall back to the built-in worlds when the file is absent.

    Entries without a capacity get ``default_capacity``. Malformed entries
    raise pydantic's ValidationError at startup.
    """
    path = config_path or _get_default_config_path()
    if not path.exists():
        logger.info("no world config found, using built-in worlds", path=str(path))
        return [w.model_copy(update={"capacity": default_capacity}) for w in DEFAULT_WORLDS]

    with path.open() as f:
        config = yaml.safe_load(f) or {}

    return [
        World.model_validate({"capacity": default_capacity, **world_data})
        for world_data in config.get("worlds", [])
    ]


class WorldRegistry:
    """Worlds and their live rooms, keyed by id and by routing path.

    Populated at startup; read-only afterwards, so lookups take no lock.
    """

    def __init__(
        self,
        worlds: Iterable[World] = (),
        *,
        presence: PresenceIndex | None = None,
        outbox_max_size: int = DEFAULT_MAX_QUEUE_SIZE,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> None:
        self.presence = presence or PresenceIndex()
        self._outbox_max_size = outbox_max_size
        self._send_timeout = send_timeout
        self._rooms: dict[str, Room] = {}  # world_id -> Room, in registration order
        self._paths: dict[str, str] = {}  # routing path -> world_id
        self._listeners: list[MembershipListener] = []
        for world in worlds:
            self.register(world)

    @classmethod
    def from_config(
        cls,
        config_path: Path | None = None,
        *,
        default_capacity: int = DEFAULT_CAPACITY,
        outbox_max_size: int = DEFAULT_MAX_QUEUE_SIZE,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> WorldRegistry:
        return cls(
            load_worlds(config_path, default_capacity=default_capacity),
            outbox_max_size=outbox_max_size,
            send_timeout=send_timeout,
        )

    def register(self, world: World) -> Room:
        """Add a world and create its room. Duplicate ids or routing paths raise ValueError."""
        if world.id in self._rooms:
            raise ValueError(f"World id already registered: {world.id}")
        if world.path in self._paths:
            raise ValueError(f"Routing path already registered: {world.path}")

        room = Room(
            world,
            presence=self.presence,
            outbox_max_size=self._outbox_max_size,
            send_timeout=self._send_timeout,
        )
        for listener in self._listeners:
            room.add_listener(listener)
        self._rooms[world.id] = room
        self._paths[world.path] = world.id
        logger.info("world registered", world_id=world.id, path=world.path, capacity=world.capacity)
        return room

    def add_membership_listener(self, listener: MembershipListener) -> None:
        """Attach to every room, including rooms registered later."""
        self._listeners.append(listener)
        for room in self._rooms.values():
            room.add_listener(listener)

    @property
    def rooms(self) -> list[Room]:
        return list(self._rooms.values())

    @property
    def worlds(self) -> list[World]:
        return [room.world for room in self._rooms.values()]

    def get(self, world_id: str) -> Room | None:
        return self._rooms.get(world_id)

    def get_by_path(self, path: str) -> Room | None:
        world_id = self._paths.get(normalize_path(path))
        if world_id is None:
            return None
        return self._rooms[world_id]

    def resolve(self, path: str, params: Mapping[str, str]) -> Room | Rejection:
        """Resolve a handshake to exactly one room.

        Unknown path -> NOT_FOUND. Missing identity, missing world id, or a
        world id that does not belong to the path -> INVALID_HANDSHAKE.
        """
        room = self.get_by_path(path)
        if room is None:
            return Rejection(ErrorCode.NOT_FOUND)
        if not params.get(USER_ID_PARAM):
            return Rejection(ErrorCode.INVALID_HANDSHAKE)
        if params.get(WORLD_ID_PARAM) != room.world_id:
            return Rejection(ErrorCode.INVALID_HANDSHAKE)
        return room
