"""aiohttp client for the REST read model (history, conversation list, edit/delete)."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

import aiohttp
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from chat_realtime.application.exceptions import ApiError
from chat_realtime.application.ports.auth import TokenProvider
from chat_realtime.domain.entities.conversation import Conversation
from chat_realtime.domain.entities.message import Message
from chat_realtime.domain.value_objects.enums import MessageStatus, MessageType
from chat_realtime.domain.value_objects.ids import conversation_id

logger = logging.getLogger(__name__)


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class MessageOut(_Schema):
    id: str
    temp_id: str | None = None
    sender_id: str
    recipient_id: str
    text: str
    message_type: MessageType = MessageType.TEXT
    timestamp: datetime
    status: MessageStatus = MessageStatus.SENT
    reply_to_id: str | None = None
    is_edited: bool = False
    is_read: bool = False
    read_at: datetime | None = None
    reactions: dict[str, int] = {}

    def to_entity(self) -> Message:
        status = MessageStatus.SEEN if self.is_read else self.status
        return Message(
            id=self.id,
            temp_id=self.temp_id,
            sender_id=self.sender_id,
            recipient_id=self.recipient_id,
            conversation_id=conversation_id(self.sender_id, self.recipient_id),
            text=self.text,
            message_type=self.message_type,
            timestamp=self.timestamp,
            status=status,
            reply_to_id=self.reply_to_id,
            is_edited=self.is_edited,
            reactions=dict(self.reactions),
            is_read=self.is_read,
            read_at=self.read_at,
        )


class ParticipantOut(_Schema):
    id: str
    username: str | None = None


class LastMessageOut(_Schema):
    text: str
    timestamp: datetime
    sender_id: str


class ConversationOut(_Schema):
    participant: ParticipantOut
    last_message: LastMessageOut | None = None
    unread_count: int = 0

    def to_entity(self, identity: str) -> Conversation:
        conv_id = conversation_id(identity, self.participant.id)
        last = None
        if self.last_message is not None:
            sender = self.last_message.sender_id
            last = Message(
                sender_id=sender,
                recipient_id=self.participant.id if sender == identity else identity,
                conversation_id=conv_id,
                text=self.last_message.text,
                timestamp=self.last_message.timestamp,
                status=MessageStatus.SENT,
            )
        return Conversation(
            id=conv_id,
            participant_id=self.participant.id,
            last_message=last,
            unread_count=self.unread_count,
        )


class ChatApiClient:
    """Implements application.ports.history.HistoryApi."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        identity_provider: Callable[[], str | None],
        *,
        timeout: float = 20.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._identity_provider = identity_provider
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        token = self._token_provider()
        if not token:
            raise ApiError("No bearer credential available", status=401)
        headers = {"Authorization": f"Bearer {token}"}
        url = f"{self._base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as http:
                async with http.request(method, url, json=json, headers=headers) as resp:
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError:
                        body = None
                    if resp.status >= 400 or not isinstance(body, dict) or not body.get("success", False):
                        detail = body.get("message") if isinstance(body, dict) else None
                        raise ApiError(detail or f"{method} {path} failed", status=resp.status)
                    return body
        except aiohttp.ClientError as exc:
            raise ApiError(f"{method} {path} failed: {exc!r}") from exc

    def _identity(self) -> str:
        identity = self._identity_provider()
        if not identity:
            raise ApiError("No active identity")
        return identity

    async def fetch_conversations(self) -> list[Conversation]:
        identity = self._identity()
        body = await self._request("GET", "/api/messages/conversations")
        return [
            ConversationOut.model_validate(raw).to_entity(identity)
            for raw in body.get("conversations", [])
        ]

    async def fetch_history(self, peer_id: str) -> list[Message]:
        body = await self._request("GET", f"/api/messages/conversation/{peer_id}")
        return [MessageOut.model_validate(raw).to_entity() for raw in body.get("messages", [])]

    async def delete_message(self, message_id: str) -> None:
        await self._request("DELETE", f"/api/messages/{message_id}")

    async def edit_message(self, message_id: str, text: str) -> Message:
        body = await self._request("PUT", f"/api/messages/{message_id}", json={"text": text})
        return MessageOut.model_validate(body["message"]).to_entity()

    async def mark_conversation_read(self, peer_id: str) -> None:
        body = await self._request("PUT", f"/api/messages/read/{peer_id}")
        logger.debug("Marked %s messages from %s as read", body.get("updatedCount"), peer_id)
