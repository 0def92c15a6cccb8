"""Entrypoint: python -m chat_realtime (runs the WebSocket relay)"""
from __future__ import annotations

import logging

import uvicorn

from chat_realtime.config import settings


def main() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "chat_realtime.app:create_app",
        factory=True,
        host=settings.RELAY_HOST,
        port=settings.RELAY_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
