from __future__ import annotations

from typing import AsyncIterator, Protocol

from chat_realtime.infrastructure.ws.protocol import InboundEvent, OutboundEvent


class TransportSession(Protocol):
    """One live duplex session. ``send`` queues and never blocks."""

    @property
    def session_id(self) -> str: ...

    def send(self, event: OutboundEvent) -> None: ...

    def events(self) -> AsyncIterator[InboundEvent]: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    async def open(self, identity: str, token: str | None) -> TransportSession:
        """Open a session.

        Raises AuthenticationError when the server rejects the credentials and
        TransportError for anything that may succeed on a later attempt.
        """
        ...
