"""In-process registry of relay WebSocket sessions."""
from __future__ import annotations

import logging

from fastapi import WebSocket

from chat_realtime.infrastructure.ws.protocol import Event, UserOffline, encode

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Tracks sockets by session id and the identity each one joined as."""

    def __init__(self) -> None:
        self._sockets: dict[str, WebSocket] = {}
        self._session_user: dict[str, str] = {}
        self._user_sessions: dict[str, set[str]] = {}

    async def accept(self, ws: WebSocket, session_id: str) -> None:
        await ws.accept()
        self._sockets[session_id] = ws
        logger.debug("WS connected: %s (total=%d)", session_id, len(self._sockets))

    def join(self, session_id: str, user_id: str) -> bool:
        """Bind a session to a user; returns True when the user just came online."""
        previous = self._session_user.get(session_id)
        if previous is not None and previous != user_id:
            self._forget(session_id)
        came_online = user_id not in self._user_sessions
        self._session_user[session_id] = user_id
        self._user_sessions.setdefault(user_id, set()).add(session_id)
        return came_online

    def disconnect(self, session_id: str) -> str | None:
        """Drop a session; returns the user id if that user has no session left."""
        self._sockets.pop(session_id, None)
        user_id = self._forget(session_id)
        logger.debug("WS disconnected: %s", session_id)
        if user_id is not None and user_id not in self._user_sessions:
            return user_id
        return None

    def _forget(self, session_id: str) -> str | None:
        user_id = self._session_user.pop(session_id, None)
        if user_id is not None:
            sessions = self._user_sessions.get(user_id)
            if sessions:
                sessions.discard(session_id)
                if not sessions:
                    del self._user_sessions[user_id]
        return user_id

    def user_of(self, session_id: str) -> str | None:
        return self._session_user.get(session_id)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._user_sessions

    def online_user_ids(self) -> list[str]:
        return list(self._user_sessions)

    async def send_to_session(self, session_id: str, event: Event) -> bool:
        ws = self._sockets.get(session_id)
        if ws is None:
            return False
        try:
            await ws.send_text(encode(event))
        except Exception:
            logger.debug("Send to %s failed, dropping session", session_id, exc_info=True)
            gone = self.disconnect(session_id)
            if gone is not None:
                logger.info("User %s went offline", gone)
                await self.broadcast(UserOffline(user_id=gone))
            return False
        return True

    async def send_to_user(self, user_id: str, event: Event) -> bool:
        delivered = False
        for session_id in list(self._user_sessions.get(user_id, ())):
            delivered = await self.send_to_session(session_id, event) or delivered
        return delivered

    async def broadcast(self, event: Event, *, exclude: str | None = None) -> None:
        for session_id in list(self._session_user):
            if session_id != exclude:
                await self.send_to_session(session_id, event)
