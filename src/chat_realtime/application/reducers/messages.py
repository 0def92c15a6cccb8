"""Pure transitions over the chat snapshot.

Every function takes the previous ``ChatState`` and returns a new one, or the
very same object when nothing changed so the store can skip notifying.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Iterable, Mapping

from chat_realtime.domain.entities.conversation import Conversation
from chat_realtime.domain.entities.message import Message
from chat_realtime.domain.value_objects.enums import MessageStatus


@dataclass(frozen=True, slots=True)
class ChatState:
    messages: Mapping[str, tuple[Message, ...]] = field(default_factory=dict)
    conversations: Mapping[str, Conversation] = field(default_factory=dict)
    active_conversation_id: str | None = None

    def conversation_messages(self, conversation_id: str) -> tuple[Message, ...]:
        return self.messages.get(conversation_id, ())

    def find(self, *, message_id: str | None = None, temp_id: str | None = None) -> Message | None:
        for msgs in self.messages.values():
            for m in msgs:
                if message_id is not None and m.id == message_id:
                    return m
                if temp_id is not None and m.temp_id == temp_id:
                    return m
        return None

    def ordered_conversations(self) -> list[Conversation]:
        """Most recently active first."""
        def _key(conv: Conversation) -> float:
            return conv.last_message.timestamp.timestamp() if conv.last_message else 0.0

        return sorted(self.conversations.values(), key=_key, reverse=True)


def _map_messages(
    state: ChatState,
    match: Callable[[Message], bool],
    change: Callable[[Message], Message],
) -> ChatState:
    changed = False
    new_messages: dict[str, tuple[Message, ...]] = {}
    for conv_id, msgs in state.messages.items():
        updated = tuple(change(m) if match(m) else m for m in msgs)
        if any(a is not b for a, b in zip(updated, msgs)):
            changed = True
            new_messages[conv_id] = updated
        else:
            new_messages[conv_id] = msgs
    if not changed:
        return state
    return replace(state, messages=new_messages)


def _touch_conversation(
    state: ChatState,
    message: Message,
    participant_id: str,
    *,
    count_unread: bool,
) -> dict[str, Conversation]:
    conversations = dict(state.conversations)
    existing = conversations.get(message.conversation_id)
    unread = existing.unread_count if existing else 0
    if count_unread and state.active_conversation_id != message.conversation_id:
        unread += 1
    conversations[message.conversation_id] = Conversation(
        id=message.conversation_id,
        participant_id=participant_id,
        last_message=message,
        unread_count=unread,
    )
    return conversations


def add_outgoing(state: ChatState, message: Message) -> ChatState:
    msgs = state.conversation_messages(message.conversation_id)
    return replace(
        state,
        messages={**state.messages, message.conversation_id: (*msgs, message)},
        conversations=_touch_conversation(
            state, message, message.recipient_id, count_unread=False,
        ),
    )


def apply_ack(state: ChatState, temp_id: str, message_id: str, timestamp: datetime) -> ChatState:
    return _map_messages(
        state,
        lambda m: m.temp_id == temp_id,
        lambda m: m.with_status(MessageStatus.SENT, id=message_id, timestamp=timestamp),
    )


def apply_send_failure(state: ChatState, temp_id: str, error: str) -> ChatState:
    return _map_messages(
        state,
        lambda m: m.temp_id == temp_id,
        lambda m: m.with_status(MessageStatus.FAILED, error=error),
    )


def is_duplicate(state: ChatState, message: Message) -> bool:
    return any(existing.same_as(message) for existing in state.conversation_messages(message.conversation_id))


def apply_inbound(state: ChatState, message: Message, local_identity: str | None) -> ChatState:
    """Append an inbound message unless it duplicates a known record."""
    if is_duplicate(state, message):
        return state
    msgs = state.conversation_messages(message.conversation_id)
    from_peer = message.sender_id != local_identity
    participant = message.sender_id if from_peer else message.recipient_id
    return replace(
        state,
        messages={**state.messages, message.conversation_id: (*msgs, message)},
        conversations=_touch_conversation(state, message, participant, count_unread=from_peer),
    )


def apply_edit(state: ChatState, message_id: str, text: str, is_edited: bool = True) -> ChatState:
    return _map_messages(
        state,
        lambda m: m.id == message_id and (m.text != text or m.is_edited != is_edited),
        lambda m: replace(m, text=text, is_edited=is_edited),
    )


def apply_delete(state: ChatState, message_id: str) -> ChatState:
    """Remove a message by durable id; deleting an unknown id is a no-op."""
    changed = False
    new_messages: dict[str, tuple[Message, ...]] = {}
    for conv_id, msgs in state.messages.items():
        kept = tuple(m for m in msgs if m.id != message_id)
        changed = changed or len(kept) != len(msgs)
        new_messages[conv_id] = kept
    if not changed:
        return state
    return replace(state, messages=new_messages)


def apply_read(state: ChatState, message_id: str, read_at: datetime) -> ChatState:
    return _map_messages(
        state,
        lambda m: (m.id == message_id or m.temp_id == message_id) and not m.is_read,
        lambda m: replace(m.with_status(MessageStatus.SEEN), is_read=True, read_at=read_at),
    )


def open_conversation(state: ChatState, conversation_id: str, peer_id: str) -> ChatState:
    conversations = dict(state.conversations)
    existing = conversations.get(conversation_id)
    if existing is None:
        conversations[conversation_id] = Conversation(id=conversation_id, participant_id=peer_id)
    elif existing.unread_count:
        conversations[conversation_id] = replace(existing, unread_count=0)
    return replace(state, conversations=conversations, active_conversation_id=conversation_id)


def mark_conversation_read(state: ChatState, conversation_id: str) -> ChatState:
    existing = state.conversations.get(conversation_id)
    if existing is None or existing.unread_count == 0:
        return state
    return replace(
        state,
        conversations={**state.conversations, conversation_id: replace(existing, unread_count=0)},
    )


def close_conversation(state: ChatState, conversation_id: str) -> ChatState:
    messages = {k: v for k, v in state.messages.items() if k != conversation_id}
    active = None if state.active_conversation_id == conversation_id else state.active_conversation_id
    return replace(state, messages=messages, active_conversation_id=active)


def merge_history(state: ChatState, conversation_id: str, history: Iterable[Message]) -> ChatState:
    """Replace the list with server history, keeping local records the server has not seen yet."""
    loaded = list(history)
    local_only = [
        m for m in state.conversation_messages(conversation_id)
        if not any(m.same_as(h) for h in loaded)
    ]
    merged = sorted([*loaded, *local_only], key=lambda m: m.timestamp)
    return replace(state, messages={**state.messages, conversation_id: tuple(merged)})


def set_conversations(state: ChatState, conversations: Iterable[Conversation]) -> ChatState:
    merged = dict(state.conversations)
    for conv in conversations:
        if conv.id == state.active_conversation_id:
            conv = replace(conv, unread_count=0)
        merged[conv.id] = conv
    return replace(state, conversations=merged)
