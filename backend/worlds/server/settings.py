"""Hub server configuration via environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from shared.validators import StringListEnvSettingsSource, parse_string_list

if TYPE_CHECKING:
    from pydantic_settings.sources.base import PydanticBaseSettingsSource


class HubServerSettings(BaseSettings):
    model_config = {"env_prefix": "WORLDS_"}

    log_dir: str = Field(default="backend/logs/worlds", min_length=1)
    config_path: Path | None = None
    cors_origins: list[str] = []
    default_capacity: int = Field(default=100, ge=1)
    handshake_timeout_seconds: float = Field(default=10.0, gt=0)
    send_timeout_seconds: float = Field(default=5.0, gt=0)
    outbox_max_size: int = Field(default=256, ge=1)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def validate_cors_origins(cls, v: str | list[str]) -> list[str]:
        return parse_string_list(v, allow_empty=True)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, StringListEnvSettingsSource(settings_cls), dotenv_settings, file_secret_settings)
