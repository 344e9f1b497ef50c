"""Typed client-to-server message models for the lobby WebSocket protocol."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter


class LobbyPingMessage(BaseModel):
    type: Literal["ping"]


class LobbyRefreshMessage(BaseModel):
    """Ask for the current world list outside the push cycle."""

    type: Literal["getWorlds"]


LobbyClientMessage = Annotated[
    LobbyPingMessage | LobbyRefreshMessage,
    Field(discriminator="type"),
]

_lobby_message_adapter: TypeAdapter[LobbyClientMessage] = TypeAdapter(LobbyClientMessage)


def parse_lobby_message(data: dict[str, Any]) -> LobbyPingMessage | LobbyRefreshMessage:
    """Validate a decoded envelope into a typed lobby message."""
    return _lobby_message_adapter.validate_python(data)
