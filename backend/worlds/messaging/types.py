from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class ClientMessageType(StrEnum):
    JOIN_WORLD = "joinWorld"
    UPDATE_PLAYER = "updatePlayer"
    CHAT_MESSAGE = "chatMessage"
    SWITCH_ZONE = "switchZone"
    LEAVE_WORLD = "leaveWorld"
    PING = "ping"


class ServerMessageType(StrEnum):
    WORLD_LIST = "worldList"
    WORLD_LIST_UPDATE = "worldListUpdate"
    WORLD_JOINED_CONFIRMED = "worldJoinedConfirmed"
    PLAYER_LIST = "playerList"
    PLAYER_JOINED = "playerJoined"
    PLAYER_UPDATE = "playerUpdate"
    PLAYER_MOVED = "playerMoved"
    PLAYER_LEFT = "playerLeft"
    CHAT_MESSAGE = "chatMessage"
    ERROR = "error"
    PONG = "pong"


class ErrorCode(StrEnum):
    NOT_FOUND = "not_found"
    INVALID_HANDSHAKE = "invalid_handshake"
    WORLD_FULL = "world_full"
    DUPLICATE_IDENTITY = "duplicate_identity"
    ALREADY_JOINED = "already_joined"
    INVALID_MESSAGE = "invalid_message"


# Keys a client may not set through updatePlayer: identity and zone are
# owned by the server (zone changes go through switchZone).
RESERVED_PLAYER_FIELDS = frozenset({"type", "userID", "user_id", "username", "zone"})


class WireModel(BaseModel):
    """Base for all wire messages; fields use the camelCase names clients expect."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# --- Client -> server ---


class JoinWorldMessage(WireModel):
    type: Literal[ClientMessageType.JOIN_WORLD] = ClientMessageType.JOIN_WORLD
    world_id: str | None = Field(default=None, alias="worldId", max_length=100)
    # Optional at the schema level: a join without userID is dropped by the
    # router rather than answered with a validation error.
    user_id: str | None = Field(default=None, alias="userID", max_length=100)
    appearance: Any = Field(default_factory=dict)
    x: float = 0.0
    y: float = 0.0
    zone: str | None = Field(default=None, min_length=1, max_length=100)
    username: str | None = Field(default=None, min_length=1, max_length=50)


class UpdatePlayerMessage(WireModel):
    """Arbitrary appearance/position fields, replicated verbatim to peers."""

    model_config = ConfigDict(extra="allow")

    type: Literal[ClientMessageType.UPDATE_PLAYER] = ClientMessageType.UPDATE_PLAYER

    @property
    def fields(self) -> dict[str, Any]:
        return {k: v for k, v in (self.model_extra or {}).items() if k not in RESERVED_PLAYER_FIELDS}


class ChatMessage(WireModel):
    type: Literal[ClientMessageType.CHAT_MESSAGE] = ClientMessageType.CHAT_MESSAGE
    message: str = Field(min_length=1)


class SwitchZoneMessage(WireModel):
    type: Literal[ClientMessageType.SWITCH_ZONE] = ClientMessageType.SWITCH_ZONE
    zone_name: str = Field(alias="zoneName", min_length=1, max_length=100)


class LeaveWorldMessage(WireModel):
    type: Literal[ClientMessageType.LEAVE_WORLD] = ClientMessageType.LEAVE_WORLD


class PingMessage(WireModel):
    type: Literal[ClientMessageType.PING] = ClientMessageType.PING


ClientMessage = Annotated[
    JoinWorldMessage | UpdatePlayerMessage | ChatMessage | SwitchZoneMessage | LeaveWorldMessage | PingMessage,
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(
    data: dict[str, Any],
) -> JoinWorldMessage | UpdatePlayerMessage | ChatMessage | SwitchZoneMessage | LeaveWorldMessage | PingMessage:
    """Validate a decoded envelope into a typed client message."""
    return _client_message_adapter.validate_python(data)


# --- Server -> client ---


class PlayerInfo(WireModel):
    """Player record as seen by peers. Position fields (x, y, ...) ride along as extras."""

    model_config = ConfigDict(extra="allow")

    user_id: str = Field(alias="userID")
    username: str
    zone: str
    appearance: Any = Field(default_factory=dict)


class WorldSummary(WireModel):
    id: str
    name: str
    path: str
    population: int
    capacity: int
    fullness: float
    meta: dict[str, Any] = Field(default_factory=dict)  # theme tag, description


class WorldListMessage(WireModel):
    type: Literal[ServerMessageType.WORLD_LIST] = ServerMessageType.WORLD_LIST
    worlds: list[WorldSummary]


class WorldListUpdateMessage(WireModel):
    type: Literal[ServerMessageType.WORLD_LIST_UPDATE] = ServerMessageType.WORLD_LIST_UPDATE
    worlds: list[WorldSummary]


class WorldJoinedConfirmedMessage(WireModel):
    type: Literal[ServerMessageType.WORLD_JOINED_CONFIRMED] = ServerMessageType.WORLD_JOINED_CONFIRMED
    world_id: str = Field(alias="worldId")
    zone_id: str = Field(alias="zoneId")
    message: str


class PlayerListMessage(WireModel):
    type: Literal[ServerMessageType.PLAYER_LIST] = ServerMessageType.PLAYER_LIST
    players: list[PlayerInfo]


class PlayerJoinedMessage(PlayerInfo):
    type: Literal[ServerMessageType.PLAYER_JOINED] = ServerMessageType.PLAYER_JOINED


class PlayerUpdateMessage(WireModel):
    model_config = ConfigDict(extra="allow")

    type: Literal[ServerMessageType.PLAYER_UPDATE] = ServerMessageType.PLAYER_UPDATE
    user_id: str = Field(alias="userID")


class PlayerMovedMessage(WireModel):
    type: Literal[ServerMessageType.PLAYER_MOVED] = ServerMessageType.PLAYER_MOVED
    user_id: str = Field(alias="userID")
    new_zone: str = Field(alias="newZone")


class PlayerLeftMessage(WireModel):
    type: Literal[ServerMessageType.PLAYER_LEFT] = ServerMessageType.PLAYER_LEFT
    user_id: str = Field(alias="userID")
    reason: str = "disconnected"


class ChatRelayMessage(WireModel):
    type: Literal[ServerMessageType.CHAT_MESSAGE] = ServerMessageType.CHAT_MESSAGE
    user_id: str = Field(alias="userID")
    message: str


class ErrorMessage(WireModel):
    type: Literal[ServerMessageType.ERROR] = ServerMessageType.ERROR
    code: ErrorCode
    message: str


class PongMessage(WireModel):
    type: Literal[ServerMessageType.PONG] = ServerMessageType.PONG
