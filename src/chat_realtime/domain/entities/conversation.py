from __future__ import annotations

from dataclasses import dataclass

from chat_realtime.domain.entities.message import Message


@dataclass(frozen=True, slots=True)
class Conversation:
    id: str
    participant_id: str
    last_message: Message | None = None
    unread_count: int = 0
