"""Identity presence index shared by all rooms."""


class PresenceIndex:
    """Track which world each identity currently has a live session in.

    Methods never await, so a check-and-claim is atomic with respect to the
    event loop and rooms do not need a shared lock to keep an identity in at
    most one world.
    """

    def __init__(self) -> None:
        self._claims: dict[str, str] = {}  # user_id -> world_id

    def world_of(self, user_id: str) -> str | None:
        return self._claims.get(user_id)

    def is_present(self, user_id: str) -> bool:
        return user_id in self._claims

    def claim(self, user_id: str, world_id: str) -> bool:
        """Claim an identity for a world. Return False if it is already live elsewhere (or here)."""
        if user_id in self._claims:
            return False
        self._claims[user_id] = world_id
        return True

    def release(self, user_id: str, world_id: str) -> None:
        """Release a claim; a claim held by a different world is left untouched."""
        if self._claims.get(user_id) == world_id:
            del self._claims[user_id]

    def __len__(self) -> int:
        return len(self._claims)
