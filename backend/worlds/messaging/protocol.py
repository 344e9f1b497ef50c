"""Abstract connection protocol for JSON text communication."""

from abc import ABC, abstractmethod
from typing import Any

from worlds.messaging.encoder import encode


class ConnectionProtocol(ABC):
    """
    Abstract interface for a client connection.

    Lets rooms, the router and the lobby be tested without real WebSocket
    connections.
    """

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Unique identifier for this connection."""
        ...

    @abstractmethod
    async def send_text(self, data: str) -> None:
        """
        Send a text frame to the client.

        Raises ConnectionError if the peer is gone.
        """
        ...

    @abstractmethod
    async def receive_text(self) -> str:
        """
        Receive a text frame from the client.

        Raises ConnectionError if the peer is gone.
        """
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """
        Close the connection. Closing an already closed connection is a no-op.
        """
        ...

    async def send_message(self, data: dict[str, Any]) -> None:
        await self.send_text(encode(data))
