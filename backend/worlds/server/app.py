from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute

from lobby.endpoints import list_worlds, lobby_websocket
from lobby.population import PopulationAggregator
from shared.build_info import APP_VERSION, GIT_COMMIT
from shared.logging import setup_logging
from worlds.messaging.router import MessageRouter
from worlds.registry.manager import WorldRegistry
from worlds.server.settings import HubServerSettings
from worlds.server.websocket import world_websocket

logger = structlog.get_logger()

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from starlette.requests import Request


async def health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "version": APP_VERSION, "commit": GIT_COMMIT})


async def status(request: Request) -> JSONResponse:
    registry: WorldRegistry = request.app.state.registry
    population: PopulationAggregator = request.app.state.population
    return JSONResponse(
        {
            "status": "ok",
            "version": APP_VERSION,
            "commit": GIT_COMMIT,
            "worlds": len(registry.rooms),
            "players_online": len(registry.presence),
            "lobby_subscribers": population.subscriber_count,
        },
    )


def create_app(
    settings: HubServerSettings | None = None,
    registry: WorldRegistry | None = None,
    message_router: MessageRouter | None = None,
) -> Starlette:
    if settings is None:  # pragma: no cover
        settings = HubServerSettings()

    if registry is None:
        registry = WorldRegistry.from_config(
            settings.config_path,
            default_capacity=settings.default_capacity,
            outbox_max_size=settings.outbox_max_size,
            send_timeout=settings.send_timeout_seconds,
        )

    population = PopulationAggregator(registry, send_timeout=settings.send_timeout_seconds)

    if message_router is None:
        message_router = MessageRouter()

    routes = [
        Route("/health", health, methods=["GET"]),
        Route("/status", status, methods=["GET"]),
        Route("/game-api/worlds", list_worlds, methods=["GET"]),
        WebSocketRoute("/game-api/worlds", lobby_websocket),
        WebSocketRoute("/worlds/{world_slug:path}", world_websocket),
    ]

    @asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncIterator[None]:
        yield
        # Let queued leave notifications drain before the connections go away.
        for room in registry.rooms:
            await room.flush()
            await room.close_all()
        await population.flush()
        logger.info("hub server stopped")

    app = Starlette(routes=routes, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.cors_origins,
        allow_methods=["GET"],
        allow_headers=["Content-Type"],
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.population = population
    app.state.message_router = message_router

    logger.info("hub server ready", worlds=[w.id for w in registry.worlds])
    return app


def get_app() -> Starlette:  # pragma: no cover  # deadcode: ignore
    """ASGI application factory for production use (e.g., uvicorn --factory)."""
    _settings = HubServerSettings()
    setup_logging(_settings.log_dir)
    return create_app(settings=_settings)
