"""Optimistic send, acknowledgement, dedup and status progression of chat messages."""
from __future__ import annotations

import logging
from typing import Callable

from chat_realtime.application.exceptions import ApiError, NotConnectedError, ValidationError
from chat_realtime.application.policies.retry import RetryPolicy
from chat_realtime.application.ports.clock import Scheduler, TimerHandle
from chat_realtime.application.ports.history import HistoryApi
from chat_realtime.application.ports.media import AlertSink
from chat_realtime.application.reducers import messages as reducers
from chat_realtime.application.reducers.messages import ChatState
from chat_realtime.application.store import Store
from chat_realtime.domain.entities.message import Message
from chat_realtime.domain.value_objects.enums import MessageStatus, MessageType
from chat_realtime.domain.value_objects.ids import conversation_id, new_temp_id
from chat_realtime.infrastructure.ws.protocol import (
    MessageDeleted,
    MessageEdited,
    MessageError,
    MessageRead,
    MessageReadConfirmation,
    MessageSent,
    ReceiveMessage,
    SendMessage,
)
from chat_realtime.services.connection_manager import ConnectionManager
from chat_realtime.services.presence_tracker import PresenceTracker

logger = logging.getLogger(__name__)


def message_from_event(event: ReceiveMessage) -> Message:
    return Message(
        id=event.id,
        temp_id=event.temp_id,
        sender_id=event.sender_id,
        recipient_id=event.recipient_id,
        conversation_id=conversation_id(event.sender_id, event.recipient_id),
        text=event.text,
        message_type=event.message_type,
        timestamp=event.timestamp,
        status=MessageStatus.DELIVERED,
        reply_to_id=event.reply_to_id,
        is_edited=event.is_edited,
        reactions=dict(event.reactions),
    )


class MessageSynchronizer:
    def __init__(
        self,
        connection: ConnectionManager,
        history: HistoryApi,
        alerts: AlertSink,
        scheduler: Scheduler,
        retry: RetryPolicy,
        *,
        presence: PresenceTracker | None = None,
    ) -> None:
        self._connection = connection
        self._history = history
        self._alerts = alerts
        self._scheduler = scheduler
        self._retry = retry
        self._presence = presence
        self._store: Store[ChatState] = Store(ChatState())
        self._retry_timers: dict[str, TimerHandle] = {}
        self._unsubscribers: list[Callable[[], None]] = [
            connection.on(ReceiveMessage, self._on_receive),
            connection.on(MessageSent, self._on_sent),
            connection.on(MessageError, self._on_error),
            connection.on(MessageReadConfirmation, self._on_read_confirmation),
            connection.on(MessageEdited, self._on_edited),
            connection.on(MessageDeleted, self._on_deleted),
        ]

    @property
    def state(self) -> ChatState:
        return self._store.state

    def subscribe(self, listener: Callable[[ChatState], None]) -> Callable[[], None]:
        return self._store.subscribe(listener)

    def messages_with(self, peer_id: str) -> tuple[Message, ...]:
        identity = self._connection.identity
        if identity is None:
            return ()
        return self._store.state.conversation_messages(conversation_id(identity, peer_id))

    # -- send --------------------------------------------------------------

    async def send_message(
        self,
        recipient_id: str,
        text: str,
        message_type: MessageType = MessageType.TEXT,
        reply_to_id: str | None = None,
    ) -> str:
        """Append an optimistic record and hand it to the transport.

        Returns the temp id. Invalid input raises ValidationError before any
        state changes; transport trouble ends up as ``status=failed``.
        """
        identity = self._connection.identity
        if not identity:
            raise ValidationError("No active identity")
        if not recipient_id:
            raise ValidationError("Recipient is required")
        body = text.strip()
        if not body:
            raise ValidationError("Message text is empty")

        message = Message(
            temp_id=new_temp_id(),
            sender_id=identity,
            recipient_id=recipient_id,
            conversation_id=conversation_id(identity, recipient_id),
            text=body,
            message_type=message_type,
            timestamp=self._scheduler.now(),
            status=MessageStatus.SENDING,
            reply_to_id=reply_to_id,
        )
        assert message.temp_id is not None
        self._store.update(lambda s: reducers.add_outgoing(s, message))

        event = SendMessage(
            temp_id=message.temp_id,
            sender_id=message.sender_id,
            recipient_id=message.recipient_id,
            conversation_id=message.conversation_id,
            text=message.text,
            message_type=message.message_type,
            timestamp=message.timestamp,
            reply_to_id=reply_to_id,
        )
        self._deliver(event, 0)
        return message.temp_id

    def _deliver(self, event: SendMessage, attempt: int) -> None:
        self._retry_timers.pop(event.temp_id, None)
        try:
            self._connection.send(event)
            return
        except NotConnectedError as exc:
            attempt += 1
            if not self._retry.allows(attempt):
                logger.warning("Giving up on %s: %s", event.temp_id, exc.detail)
                self._store.update(
                    lambda s: reducers.apply_send_failure(s, event.temp_id, "Not connected"),
                )
                return
        logger.info("Not connected, reconnecting before retrying %s", event.temp_id)
        self._connection.reconnect()
        self._retry_timers[event.temp_id] = self._scheduler.call_later(
            self._retry.delay(attempt), lambda: self._deliver(event, attempt),
        )

    # -- transport events --------------------------------------------------

    def _on_sent(self, event: MessageSent) -> None:
        if self._store.state.find(temp_id=event.temp_id) is None:
            logger.debug("Ack for unknown message %s", event.temp_id)
            return
        self._store.update(
            lambda s: reducers.apply_ack(s, event.temp_id, event.message_id, event.timestamp),
        )

    def _on_error(self, event: MessageError) -> None:
        logger.warning("Server rejected message %s: %s", event.temp_id, event.error)
        if event.temp_id is None or self._store.state.find(temp_id=event.temp_id) is None:
            return
        temp_id = event.temp_id
        self._store.update(lambda s: reducers.apply_send_failure(s, temp_id, event.error))

    def _on_receive(self, event: ReceiveMessage) -> None:
        message = message_from_event(event)
        identity = self._connection.identity
        before = self._store.state
        after = self._store.update(lambda s: reducers.apply_inbound(s, message, identity))
        if after is before:
            logger.debug("Duplicate message %s skipped", message.id or message.temp_id)
            return
        if message.sender_id == identity:
            return
        if self._presence is not None:
            self._presence.mark_online(message.sender_id)
        if after.active_conversation_id != message.conversation_id:
            self._alerts.notify_message(message)

    def _on_read_confirmation(self, event: MessageReadConfirmation) -> None:
        self._store.update(lambda s: reducers.apply_read(s, event.message_id, event.read_at))

    def _on_edited(self, event: MessageEdited) -> None:
        self._store.update(lambda s: reducers.apply_edit(s, event.message_id, event.text, event.is_edited))

    def _on_deleted(self, event: MessageDeleted) -> None:
        self._store.update(lambda s: reducers.apply_delete(s, event.message_id))

    # -- read receipts -----------------------------------------------------

    def mark_message_as_read(self, message_id: str, sender_id: str) -> None:
        self._connection.emit(MessageRead(message_id=message_id, sender_id=sender_id))

    # -- REST-backed mutations ---------------------------------------------

    async def edit_message(self, message_id: str, text: str) -> None:
        body = text.strip()
        if not body:
            raise ValidationError("Message text is empty")
        edited = await self._history.edit_message(message_id, body)
        self._store.update(lambda s: reducers.apply_edit(s, message_id, edited.text, True))

    async def delete_message(self, message_id: str) -> None:
        await self._history.delete_message(message_id)
        self._store.update(lambda s: reducers.apply_delete(s, message_id))

    # -- conversations -----------------------------------------------------

    async def load_conversations(self) -> None:
        conversations = await self._history.fetch_conversations()
        self._store.update(lambda s: reducers.set_conversations(s, conversations))

    async def open_conversation(self, peer_id: str) -> None:
        identity = self._connection.identity
        if not identity:
            raise ValidationError("No active identity")
        if not peer_id:
            raise ValidationError("Peer is required")
        conv_id = conversation_id(identity, peer_id)
        self._store.update(lambda s: reducers.open_conversation(s, conv_id, peer_id))

        history = await self._history.fetch_history(peer_id)
        self._store.update(lambda s: reducers.merge_history(s, conv_id, history))
        logger.info("Loaded %d messages with %s", len(history), peer_id)
        await self.mark_conversation_read(peer_id)

    async def mark_conversation_read(self, peer_id: str) -> None:
        identity = self._connection.identity
        if not identity:
            return
        conv_id = conversation_id(identity, peer_id)
        self._store.update(lambda s: reducers.mark_conversation_read(s, conv_id))
        try:
            await self._history.mark_conversation_read(peer_id)
        except ApiError as exc:
            logger.warning("Could not persist read state for %s: %s", peer_id, exc.detail)

    def close_conversation(self, peer_id: str) -> None:
        identity = self._connection.identity
        if not identity:
            return
        conv_id = conversation_id(identity, peer_id)
        self._store.update(lambda s: reducers.close_conversation(s, conv_id))

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for handle in self._retry_timers.values():
            handle.cancel()
        self._retry_timers.clear()
