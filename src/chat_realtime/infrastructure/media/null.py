"""Device-less adapters for headless runs: no capture, alerts go to the log."""
from __future__ import annotations

import logging

from chat_realtime.application.exceptions import MediaUnavailableError
from chat_realtime.application.ports.media import LocalStream
from chat_realtime.domain.entities.message import Message
from chat_realtime.domain.value_objects.enums import CallType

logger = logging.getLogger(__name__)


class NullMediaSource:
    async def acquire(self, call_type: CallType) -> LocalStream:
        raise MediaUnavailableError(f"No capture device for {call_type} call")


class LoggingAlertSink:
    def ring(self) -> None:
        logger.info("Incoming call ringing")

    def stop_ringing(self) -> None:
        logger.debug("Ringing stopped")

    def notify_message(self, message: Message) -> None:
        logger.info("New message from %s: %s", message.sender_id, message.text[:80])
