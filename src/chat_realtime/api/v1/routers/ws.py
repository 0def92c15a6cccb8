from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from chat_realtime.application.dto.principal import Principal
from chat_realtime.infrastructure.ws.registry import SessionRegistry
from chat_realtime.infrastructure.ws.protocol import (
    AnswerCall,
    CallAnswered,
    CallEnded,
    CallMade,
    CallUser,
    EndCall,
    GetOnlineUsers,
    IceCandidateReceived,
    Join,
    MessageError,
    MessageRead,
    MessageReadConfirmation,
    MessageSent,
    OnlineUsersList,
    OutboundEvent,
    ReceiveMessage,
    SendIceCandidate,
    SendMessage,
    ServerError,
    SessionReady,
    TypingStart,
    TypingStop,
    UserOffline,
    UserOnline,
    UserTyping,
    decode_outbound,
    encode,
)

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])

AUTH_FAILED_CODE = 4001


async def _authenticate(ws: WebSocket, token: str | None) -> Principal | None:
    if not token:
        return None
    try:
        return await ws.app.state.verifier.verify(token)
    except Exception:
        logger.debug("WS auth failed", exc_info=True)
        return None


@router.websocket("/ws/chat")
async def ws_chat(
    websocket: WebSocket,
    token: str | None = Query(default=None),
) -> None:
    principal = await _authenticate(websocket, token)
    if principal is None:
        await websocket.close(code=AUTH_FAILED_CODE, reason="Authentication failed")
        return

    registry: SessionRegistry = websocket.app.state.registry
    session_id = uuid.uuid4().hex
    await registry.accept(websocket, session_id)
    await websocket.send_text(encode(SessionReady(session_id=session_id)))
    try:
        await _read_loop(websocket, registry, principal, session_id)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("WS error for %s", session_id)
    finally:
        gone = registry.disconnect(session_id)
        if gone is not None:
            await registry.broadcast(UserOffline(user_id=gone))
            logger.info("User %s went offline", gone)


async def _read_loop(
    ws: WebSocket,
    registry: SessionRegistry,
    principal: Principal,
    session_id: str,
) -> None:
    while True:
        raw = await ws.receive_text()
        try:
            event = decode_outbound(raw)
        except ValueError:
            await ws.send_text(encode(ServerError(code="invalid_payload")))
            continue

        if isinstance(event, Join):
            if not await _handle_join(ws, registry, principal, session_id, event):
                await ws.close(code=AUTH_FAILED_CODE, reason="Identity rejected")
                return
            continue

        user_id = registry.user_of(session_id)
        if user_id is None:
            if isinstance(event, SendMessage):
                await ws.send_text(encode(MessageError(
                    temp_id=event.temp_id, error="Failed to send message: not joined",
                )))
            else:
                await ws.send_text(encode(ServerError(code="not_joined", detail=event.event)))
            continue

        await _handle(registry, session_id, user_id, event)


async def _handle_join(
    ws: WebSocket,
    registry: SessionRegistry,
    principal: Principal,
    session_id: str,
    event: Join,
) -> bool:
    if not principal.may_act_as(event.user_id):
        logger.warning("Session %s may not join as %s", session_id, event.user_id)
        await ws.send_text(encode(ServerError(code="forbidden", detail="join")))
        return False
    if registry.join(session_id, event.user_id):
        await registry.broadcast(UserOnline(user_id=event.user_id), exclude=session_id)
    logger.info("User %s joined with session %s", event.user_id, session_id)
    await ws.send_text(encode(OnlineUsersList(user_ids=registry.online_user_ids())))
    return True


async def _handle(
    registry: SessionRegistry,
    session_id: str,
    user_id: str,
    event: OutboundEvent,
) -> None:
    if isinstance(event, GetOnlineUsers):
        await registry.send_to_session(session_id, OnlineUsersList(user_ids=registry.online_user_ids()))

    elif isinstance(event, SendMessage):
        await _handle_send(registry, session_id, user_id, event)

    elif isinstance(event, (TypingStart, TypingStop)):
        await registry.send_to_user(
            event.recipient_id,
            UserTyping(user_id=user_id, is_typing=isinstance(event, TypingStart)),
        )

    elif isinstance(event, MessageRead):
        await registry.send_to_user(
            event.sender_id,
            MessageReadConfirmation(
                message_id=event.message_id,
                read_by=user_id,
                read_at=datetime.now(timezone.utc),
            ),
        )

    elif isinstance(event, CallUser):
        delivered = await registry.send_to_user(
            event.user_to_call,
            CallMade(offer=event.offer, from_=user_id, socket=session_id, call_type=event.call_type),
        )
        if not delivered:
            logger.info("Call from %s to offline user %s dropped", user_id, event.user_to_call)

    elif isinstance(event, AnswerCall):
        answered = CallAnswered(answer=event.answer, socket=session_id)
        if not await registry.send_to_session(event.to, answered):
            await registry.send_to_user(event.to, answered)

    elif isinstance(event, SendIceCandidate):
        relayed = IceCandidateReceived(candidate=event.candidate, from_=session_id)
        if event.to and await registry.send_to_session(event.to, relayed):
            return
        if event.target_user_id and await registry.send_to_user(event.target_user_id, relayed):
            return
        logger.info("ICE candidate from %s could not be delivered", session_id)

    elif isinstance(event, EndCall):
        ended = CallEnded(from_=user_id)
        if not await registry.send_to_user(event.to, ended) and event.socket_id:
            await registry.send_to_session(event.socket_id, ended)


async def _handle_send(
    registry: SessionRegistry,
    session_id: str,
    user_id: str,
    event: SendMessage,
) -> None:
    if event.sender_id != user_id or not event.recipient_id or not event.text.strip():
        await registry.send_to_session(
            session_id,
            MessageError(temp_id=event.temp_id, error="Failed to send message: invalid message fields"),
        )
        return

    message_id = uuid.uuid4().hex
    timestamp = datetime.now(timezone.utc)
    delivered = await registry.send_to_user(
        event.recipient_id,
        ReceiveMessage(
            id=message_id,
            temp_id=event.temp_id,
            sender_id=event.sender_id,
            recipient_id=event.recipient_id,
            conversation_id=event.conversation_id,
            text=event.text,
            message_type=event.message_type,
            timestamp=timestamp,
            reply_to_id=event.reply_to_id,
        ),
    )
    if not delivered:
        logger.info("Recipient %s offline, message %s not delivered", event.recipient_id, message_id)

    await registry.send_to_session(
        session_id,
        MessageSent(temp_id=event.temp_id, message_id=message_id, timestamp=timestamp),
    )
