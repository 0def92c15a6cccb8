from __future__ import annotations

from typing import Protocol

from chat_realtime.application.dto.principal import Principal


class TokenVerifier(Protocol):
    async def verify(self, token: str) -> Principal: ...


class TokenProvider(Protocol):
    """Supplies the bearer credential issued by the external auth collaborator."""

    def __call__(self) -> str | None: ...
