from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from chat_realtime.api.deps import get_verifier
from chat_realtime.api.v1.routers import health, ws
from chat_realtime.application.ports.auth import TokenVerifier
from chat_realtime.infrastructure.ws.registry import SessionRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""
    logger.info("Relay started")
    yield
    logger.info("Relay stopped with %d users online", len(app.state.registry.online_user_ids()))


def create_app(verifier: TokenVerifier | None = None) -> FastAPI:
    app = FastAPI(
        title="Chat Realtime Relay",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.registry = SessionRegistry()
    app.state.verifier = verifier or get_verifier()

    app.include_router(health.router)
    app.include_router(ws.router)

    return app
