from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Mapping

from chat_realtime.domain.value_objects.enums import MessageStatus, MessageType

_STATUS_RANK: dict[MessageStatus, int] = {
    MessageStatus.SENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.SEEN: 3,
}

_FAILABLE = frozenset({MessageStatus.SENDING, MessageStatus.SENT})


def can_transition(current: MessageStatus, new: MessageStatus) -> bool:
    """Status only moves forward; ``failed`` is reachable from sending/sent and is final."""
    if current == MessageStatus.FAILED:
        return False
    if new == MessageStatus.FAILED:
        return current in _FAILABLE
    return _STATUS_RANK[new] > _STATUS_RANK[current]


@dataclass(frozen=True, slots=True)
class Message:
    sender_id: str
    recipient_id: str
    conversation_id: str
    text: str
    timestamp: datetime
    status: MessageStatus
    message_type: MessageType = MessageType.TEXT
    id: str | None = None
    temp_id: str | None = None
    reply_to_id: str | None = None
    is_edited: bool = False
    reactions: Mapping[str, int] = field(default_factory=dict)
    is_read: bool = False
    read_at: datetime | None = None
    error: str | None = None

    def with_status(self, status: MessageStatus, **changes: object) -> Message:
        """Return a copy advanced to ``status``; regressions leave the record untouched."""
        if not can_transition(self.status, status):
            return self
        return replace(self, status=status, **changes)

    def same_as(self, other: Message) -> bool:
        """Duplicate check used for inbound delivery."""
        if self.temp_id is not None and self.temp_id == other.temp_id:
            return True
        if self.id is not None and self.id == other.id:
            return True
        return self.timestamp == other.timestamp and self.text == other.text
