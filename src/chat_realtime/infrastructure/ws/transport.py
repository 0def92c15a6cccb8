"""aiohttp WebSocket client implementing application.ports.transport.Transport."""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

import aiohttp

from chat_realtime.application.exceptions import AuthenticationError, TransportError
from chat_realtime.infrastructure.ws.protocol import (
    InboundEvent,
    OutboundEvent,
    SessionReady,
    decode_inbound,
    encode,
)

logger = logging.getLogger(__name__)

AUTH_CLOSE_CODE = 4001
_AUTH_HTTP_STATUSES = frozenset({401, 403})


class WebSocketSession:
    """A live session; outbound frames go through a queue drained by a writer task."""

    def __init__(
        self,
        http: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
        session_id: str,
    ) -> None:
        self._http = http
        self._ws = ws
        self._session_id = session_id
        self._outbox: asyncio.Queue[str | None] = asyncio.Queue()
        self._writer = asyncio.create_task(self._write_loop(), name=f"ws-writer-{session_id}")

    @property
    def session_id(self) -> str:
        return self._session_id

    def send(self, event: OutboundEvent) -> None:
        self._outbox.put_nowait(encode(event))

    async def _write_loop(self) -> None:
        while True:
            raw = await self._outbox.get()
            if raw is None:
                return
            try:
                await self._ws.send_str(raw)
            except (aiohttp.ClientError, ConnectionResetError):
                logger.warning("WS send failed on %s, dropping writer", self._session_id)
                return

    async def events(self) -> AsyncIterator[InboundEvent]:
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    yield decode_inbound(msg.data)
                except ValueError:
                    logger.warning("Dropping malformed frame on %s", self._session_id, exc_info=True)
            elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break
        if self._ws.close_code == AUTH_CLOSE_CODE:
            raise AuthenticationError("Session closed by server: authentication failed")

    async def close(self) -> None:
        self._outbox.put_nowait(None)
        try:
            await asyncio.wait_for(self._writer, timeout=1.0)
        except asyncio.TimeoutError:
            self._writer.cancel()
        await self._ws.close()
        await self._http.close()


class WebSocketTransport:
    def __init__(
        self,
        url: str,
        *,
        connect_timeout: float = 20.0,
        heartbeat: float | None = 25.0,
    ) -> None:
        self._url = url
        self._connect_timeout = connect_timeout
        self._heartbeat = heartbeat

    async def open(self, identity: str, token: str | None) -> WebSocketSession:
        params = {"token": token} if token else {}
        http = aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(
                http.ws_connect(self._url, params=params, heartbeat=self._heartbeat),
                timeout=self._connect_timeout,
            )
            session_id = await self._await_ready(ws)
        except aiohttp.WSServerHandshakeError as exc:
            await http.close()
            if exc.status in _AUTH_HTTP_STATUSES:
                raise AuthenticationError(f"Authentication rejected for {identity}") from exc
            raise TransportError(f"Handshake failed: {exc.status}") from exc
        except TransportError:
            await http.close()
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
            await http.close()
            raise TransportError(f"Connect failed: {exc!r}") from exc
        logger.info("WS session %s opened for %s", session_id, identity)
        return WebSocketSession(http, ws, session_id)

    async def _await_ready(self, ws: aiohttp.ClientWebSocketResponse) -> str:
        """The first frame after the handshake carries the server-assigned session id."""
        msg = await ws.receive(timeout=self._connect_timeout)
        if msg.type == aiohttp.WSMsgType.TEXT:
            event = decode_inbound(msg.data)
            if isinstance(event, SessionReady):
                return event.session_id
        if ws.close_code == AUTH_CLOSE_CODE:
            raise AuthenticationError("Session closed by server: authentication failed")
        await ws.close()
        raise TransportError("Server did not announce a session")
