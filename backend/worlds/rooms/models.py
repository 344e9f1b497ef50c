"""Session state for players connected to a world."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from worlds.messaging.types import RESERVED_PLAYER_FIELDS, ErrorCode, PlayerInfo

if TYPE_CHECKING:
    from worlds.messaging.protocol import ConnectionProtocol
    from worlds.rooms.broadcast import Outbox

DEFAULT_ZONE = "unknown"
DEFAULT_USERNAME = "Player"

# Position keys may not shadow the fields PlayerInfo already carries.
_NON_POSITION_FIELDS = RESERVED_PLAYER_FIELDS | {"appearance"}


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    JOINED = "joined"
    REJECTED = "rejected"
    DISCONNECTED = "disconnected"

    @property
    def is_terminal(self) -> bool:
        return self in (ConnectionState.REJECTED, ConnectionState.DISCONNECTED)


@dataclass(frozen=True)
class Rejection:
    """Why a handshake or join was refused. No state exists for a rejected connection."""

    reason: ErrorCode


def position_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if k not in _NON_POSITION_FIELDS}


@dataclass
class Session:
    """One joined participant. Owned by exactly one Room.

    The outbox is the only writer to the connection while the session is
    live. Appearance and position are opaque blobs relayed verbatim.
    """

    connection: ConnectionProtocol
    outbox: Outbox
    user_id: str
    world_id: str
    zone: str = DEFAULT_ZONE
    username: str = DEFAULT_USERNAME
    appearance: Any = field(default_factory=dict)
    position: dict[str, Any] = field(default_factory=dict)
    joined_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def session_id(self) -> str:
        return self.connection.connection_id

    def apply_update(self, fields: dict[str, Any]) -> None:
        if "appearance" in fields:
            self.appearance = fields["appearance"]
        self.position.update(position_fields(fields))

    def to_player_info(self) -> PlayerInfo:
        return PlayerInfo(
            user_id=self.user_id,
            username=self.username,
            zone=self.zone,
            appearance=self.appearance,
            **self.position,
        )
