"""Wire protocol: one pydantic model per event name.

Frames are ``{"event": <name>, "data": {...}}`` with camelCase keys. The two
registries below are closed: a name missing from them is rejected on decode.
"""
from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Literal, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chat_realtime.domain.value_objects.enums import CallType, MessageType
from chat_realtime.infrastructure.ws.serializer import deserialize_event, serialize_event


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class Event(WireModel):
    event: ClassVar[str]


class SessionDescription(WireModel):
    type: Literal["offer", "answer"]
    sdp: str


class IceCandidateInit(WireModel):
    candidate: str
    sdp_mid: str | None = None
    sdp_m_line_index: int | None = None


# Client → server


class Join(Event):
    event: ClassVar[str] = "join"
    user_id: str


class GetOnlineUsers(Event):
    event: ClassVar[str] = "get_online_users"


class SendMessage(Event):
    event: ClassVar[str] = "send_message"
    temp_id: str
    sender_id: str
    recipient_id: str
    conversation_id: str
    text: str
    message_type: MessageType = MessageType.TEXT
    timestamp: datetime
    reply_to_id: str | None = None


class TypingStart(Event):
    event: ClassVar[str] = "typing_start"
    recipient_id: str


class TypingStop(Event):
    event: ClassVar[str] = "typing_stop"
    recipient_id: str


class MessageRead(Event):
    event: ClassVar[str] = "message_read"
    message_id: str
    sender_id: str


class CallUser(Event):
    event: ClassVar[str] = "call-user"
    user_to_call: str
    offer: SessionDescription
    call_type: CallType = CallType.AUDIO


class AnswerCall(Event):
    event: ClassVar[str] = "answer-call"
    to: str
    answer: SessionDescription


class SendIceCandidate(Event):
    event: ClassVar[str] = "ice-candidate"
    candidate: IceCandidateInit
    to: str | None = None
    target_user_id: str | None = None


class EndCall(Event):
    event: ClassVar[str] = "end-call"
    to: str
    socket_id: str | None = None


# Server → client


class SessionReady(Event):
    event: ClassVar[str] = "session_ready"
    session_id: str


class ReceiveMessage(Event):
    event: ClassVar[str] = "receive_message"
    id: str | None = None
    temp_id: str | None = None
    sender_id: str
    recipient_id: str
    conversation_id: str | None = None
    text: str
    message_type: MessageType = MessageType.TEXT
    timestamp: datetime
    reply_to_id: str | None = None
    is_edited: bool = False
    reactions: dict[str, int] = {}


class MessageSent(Event):
    event: ClassVar[str] = "message_sent"
    temp_id: str
    message_id: str
    timestamp: datetime


class MessageError(Event):
    event: ClassVar[str] = "message_error"
    temp_id: str | None = None
    error: str


class UserTyping(Event):
    event: ClassVar[str] = "user_typing"
    user_id: str
    is_typing: bool


class OnlineUsersList(Event):
    event: ClassVar[str] = "online_users_list"
    user_ids: list[str]


class UserOnline(Event):
    event: ClassVar[str] = "user_online"
    user_id: str


class UserOffline(Event):
    event: ClassVar[str] = "user_offline"
    user_id: str


class MessageReadConfirmation(Event):
    event: ClassVar[str] = "message_read_confirmation"
    message_id: str
    read_by: str | None = None
    read_at: datetime


class MessageDeleted(Event):
    event: ClassVar[str] = "message_deleted"
    message_id: str
    conversation_id: str | None = None


class MessageEdited(Event):
    event: ClassVar[str] = "message_edited"
    message_id: str
    conversation_id: str | None = None
    text: str
    is_edited: bool = True


class CallMade(Event):
    event: ClassVar[str] = "call-made"
    offer: SessionDescription
    from_: str = Field(alias="from")
    socket: str
    call_type: CallType = CallType.AUDIO


class CallAnswered(Event):
    event: ClassVar[str] = "call-answered"
    answer: SessionDescription
    socket: str


class IceCandidateReceived(Event):
    event: ClassVar[str] = "ice-candidate"
    candidate: IceCandidateInit
    from_: str | None = Field(default=None, alias="from")


class CallEnded(Event):
    event: ClassVar[str] = "call-ended"
    from_: str | None = Field(default=None, alias="from")


class CallFailed(Event):
    event: ClassVar[str] = "call-failed"
    reason: str


class ServerError(Event):
    event: ClassVar[str] = "error"
    code: str
    detail: str | None = None


OutboundEvent = Union[
    Join,
    GetOnlineUsers,
    SendMessage,
    TypingStart,
    TypingStop,
    MessageRead,
    CallUser,
    AnswerCall,
    SendIceCandidate,
    EndCall,
]

InboundEvent = Union[
    SessionReady,
    ReceiveMessage,
    MessageSent,
    MessageError,
    UserTyping,
    OnlineUsersList,
    UserOnline,
    UserOffline,
    MessageReadConfirmation,
    MessageDeleted,
    MessageEdited,
    CallMade,
    CallAnswered,
    IceCandidateReceived,
    CallEnded,
    CallFailed,
    ServerError,
]

OUTBOUND: dict[str, type[Event]] = {cls.event: cls for cls in OutboundEvent.__args__}
INBOUND: dict[str, type[Event]] = {cls.event: cls for cls in InboundEvent.__args__}

E = TypeVar("E", bound=Event)


class UnknownEventError(ValueError):
    pass


def encode(event: Event) -> str:
    payload = event.model_dump(mode="json", by_alias=True, exclude_none=True)
    return serialize_event(event.event, payload)


def _decode(raw: str | bytes, registry: dict[str, type[E]]) -> E:
    name, data = deserialize_event(raw)
    cls = registry.get(name)
    if cls is None:
        raise UnknownEventError(f"Unknown event {name!r}")
    return cls.model_validate(data)


def decode_inbound(raw: str | bytes) -> InboundEvent:
    """Parse a server → client frame. Raises ValueError on anything malformed."""
    return _decode(raw, INBOUND)  # type: ignore[return-value]


def decode_outbound(raw: str | bytes) -> OutboundEvent:
    """Parse a client → server frame. Raises ValueError on anything malformed."""
    return _decode(raw, OUTBOUND)  # type: ignore[return-value]
