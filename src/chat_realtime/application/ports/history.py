from __future__ import annotations

from typing import Protocol

from chat_realtime.domain.entities.conversation import Conversation
from chat_realtime.domain.entities.message import Message


class HistoryApi(Protocol):
    """REST read model and mutations; all calls carry a bearer credential."""

    async def fetch_conversations(self) -> list[Conversation]: ...

    async def fetch_history(self, peer_id: str) -> list[Message]: ...

    async def delete_message(self, message_id: str) -> None: ...

    async def edit_message(self, message_id: str, text: str) -> Message: ...

    async def mark_conversation_read(self, peer_id: str) -> None: ...
