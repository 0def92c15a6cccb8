from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    SERVER_WS_URL: str = "ws://localhost:5000/ws/chat"
    API_URL: str = "http://localhost:5000"

    CONNECT_TIMEOUT: float = 20.0
    RECONNECT_ATTEMPTS: int = 5
    RECONNECT_DELAY: float = 1.0
    RECONNECT_DELAY_MAX: float = 5.0

    SEND_RETRY_DELAY: float = 1.0

    TYPING_IDLE_SECONDS: float = 2.0
    TYPING_EXPIRY_SECONDS: float = 3.0
    PRESENCE_RESYNC_SECONDS: float = 30.0

    RING_INTERVAL_SECONDS: float = 3.0
    ICE_SERVERS: list[str] = ["stun:stun.l.google.com:19302"]

    JWT_SECRET: str = ""
    JWT_ALGORITHM: str = "HS256"

    RELAY_HOST: str = "0.0.0.0"
    RELAY_PORT: int = 5000
    WS_HEARTBEAT_SECONDS: int = 25

    LOG_LEVEL: str = "INFO"

    model_config = ConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
