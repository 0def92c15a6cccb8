from __future__ import annotations

from typing import Protocol, Sequence

from chat_realtime.domain.entities.message import Message
from chat_realtime.domain.value_objects.enums import CallType


class MediaTrack(Protocol):
    kind: str
    enabled: bool

    def stop(self) -> None: ...


class LocalStream(Protocol):
    @property
    def tracks(self) -> Sequence[MediaTrack]: ...


class MediaSource(Protocol):
    async def acquire(self, call_type: CallType) -> LocalStream:
        """Raises MediaPermissionError / MediaUnavailableError."""
        ...


class AlertSink(Protocol):
    def ring(self) -> None: ...

    def stop_ringing(self) -> None: ...

    def notify_message(self, message: Message) -> None: ...
