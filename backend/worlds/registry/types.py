from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_CAPACITY = 100


class World(BaseModel):
    """Statically configured world. Immutable once registered."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=100, pattern=r"^[a-zA-Z0-9_-]+$")
    name: str = Field(min_length=1, max_length=100)
    path: str = Field(min_length=2, max_length=200, pattern=r"^/[a-zA-Z0-9/_-]+$")
    capacity: int = Field(default=DEFAULT_CAPACITY, ge=1)
    meta: dict[str, Any] = Field(default_factory=dict)

    @field_validator("path")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return normalize_path(v)


def normalize_path(path: str) -> str:
    """Drop trailing slashes so "/worlds/town/" and "/worlds/town" route alike."""
    return path.rstrip("/") or "/"
