"""Shared test fixtures."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable

import pytest

from chat_realtime.application.exceptions import ApiError, SignalingError
from chat_realtime.application.policies.retry import RetryPolicy
from chat_realtime.domain.entities.conversation import Conversation
from chat_realtime.domain.entities.message import Message
from chat_realtime.domain.value_objects.enums import CallType, MessageStatus
from chat_realtime.domain.value_objects.ids import conversation_id
from chat_realtime.infrastructure.ws.protocol import (
    IceCandidateInit,
    InboundEvent,
    OutboundEvent,
    SessionDescription,
)
from chat_realtime.services.connection_manager import ConnectionManager

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


async def drain(rounds: int = 20) -> None:
    """Let pending tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(predicate: Callable[[], bool], rounds: int = 500) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    assert predicate(), "condition never became true"


# -- clock -------------------------------------------------------------------


@dataclass
class ManualTimer:
    due: float
    seq: int
    callback: Callable[[], None]
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Virtual clock: timers only fire from ``advance``."""

    def __init__(self, start: datetime = T0) -> None:
        self._start = start
        self._elapsed = 0.0
        self._seq = 0
        self._timers: list[ManualTimer] = []

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self._elapsed + delay, self._seq, callback)
        self._seq += 1
        self._timers.append(timer)
        return timer

    def advance(self, seconds: float) -> None:
        target = self._elapsed + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due, t.seq))
            self._timers.remove(timer)
            self._elapsed = timer.due
            timer.callback()
        self._timers = [t for t in self._timers if not t.cancelled]
        self._elapsed = target

    @property
    def pending(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)


# -- transport ---------------------------------------------------------------


class FakeSession:
    def __init__(self, session_id: str = "s-1") -> None:
        self.session_id = session_id
        self.sent: list[OutboundEvent] = []
        self.closed = False
        self._inbox: asyncio.Queue[InboundEvent | None] = asyncio.Queue()
        self._end_error: Exception | None = None

    def send(self, event: OutboundEvent) -> None:
        self.sent.append(event)

    def sent_of(self, event_type: type) -> list[Any]:
        return [e for e in self.sent if isinstance(e, event_type)]

    def push(self, event: InboundEvent) -> None:
        self._inbox.put_nowait(event)

    def drop(self, error: Exception | None = None) -> None:
        """Simulate the server closing the session."""
        self._end_error = error
        self._inbox.put_nowait(None)

    async def events(self) -> AsyncIterator[InboundEvent]:
        while True:
            event = await self._inbox.get()
            if event is None:
                if self._end_error is not None:
                    raise self._end_error
                return
            yield event

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)


class FakeTransport:
    """Hands out queued outcomes, then ``fail_with`` or fresh sessions."""

    def __init__(self, *outcomes: FakeSession | Exception, fail_with: Exception | None = None) -> None:
        self.outcomes = list(outcomes)
        self.fail_with = fail_with
        self.opened: list[tuple[str, str | None]] = []
        self.sessions: list[FakeSession] = []

    async def open(self, identity: str, token: str | None) -> FakeSession:
        self.opened.append((identity, token))
        if self.outcomes:
            outcome = self.outcomes.pop(0)
        elif self.fail_with is not None:
            outcome = self.fail_with
        else:
            outcome = FakeSession(f"s-{len(self.opened)}")
        if isinstance(outcome, Exception):
            raise outcome
        self.sessions.append(outcome)
        return outcome

    @property
    def session(self) -> FakeSession:
        return self.sessions[-1]


def make_connection(transport: FakeTransport | None = None, *, attempts: int = 3) -> ConnectionManager:
    return ConnectionManager(
        transport or FakeTransport(),
        RetryPolicy(max_attempts=attempts, base_delay=0.0),
    )


async def connect(connection: ConnectionManager, identity: str = "alice", token: str | None = "tok") -> None:
    await connection.connect(identity, token)
    await eventually(lambda: connection.is_connected)


# -- media / rtc -------------------------------------------------------------


@dataclass
class FakeTrack:
    kind: str
    enabled: bool = True
    stopped: bool = False

    def stop(self) -> None:
        self.stopped = True


@dataclass
class FakeStream:
    tracks: tuple[FakeTrack, ...]


class FakeMedia:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.streams: list[FakeStream] = []

    async def acquire(self, call_type: CallType) -> FakeStream:
        if self.error is not None:
            raise self.error
        tracks = [FakeTrack("audio")]
        if call_type == CallType.VIDEO:
            tracks.append(FakeTrack("video"))
        stream = FakeStream(tuple(tracks))
        self.streams.append(stream)
        return stream


def offer(sdp: str = "v=0 offer") -> SessionDescription:
    return SessionDescription(type="offer", sdp=sdp)


def answer(sdp: str = "v=0 answer") -> SessionDescription:
    return SessionDescription(type="answer", sdp=sdp)


def candidate(n: int) -> IceCandidateInit:
    return IceCandidateInit(candidate=f"candidate:{n} 1 udp 2122260223 10.0.0.{n} 5000{n} typ host", sdp_mid="0", sdp_m_line_index=0)


class FakePeerConnection:
    def __init__(
        self,
        on_ice_candidate: Callable[[IceCandidateInit], None],
        on_track: Callable[[Any], None],
        on_connection_state: Callable[[str], None],
        *,
        reject_remote: bool = False,
        hold: str | None = None,
    ) -> None:
        self.on_ice_candidate = on_ice_candidate
        self.on_track = on_track
        self.on_connection_state = on_connection_state
        self.reject_remote = reject_remote
        self.calls: list[tuple[str, str]] = []
        self.local: SessionDescription | None = None
        self.remote: SessionDescription | None = None
        self.candidates: list[IceCandidateInit] = []
        self.closed = False
        self.hold = hold
        self.held = asyncio.Event()
        self.release = asyncio.Event()

    async def _gate(self, step: str) -> None:
        """Park inside ``step`` until the test sets ``release``."""
        if self.hold == step:
            self.held.set()
            await self.release.wait()

    def add_transceiver(self, kind: str, direction: str = "sendrecv") -> None:
        self.calls.append(("add_transceiver", kind))

    def add_track(self, track: FakeTrack) -> None:
        self.calls.append(("add_track", track.kind))

    async def create_offer(self) -> SessionDescription:
        return offer()

    async def create_answer(self) -> SessionDescription:
        return answer()

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._gate("set_local_description")
        self.local = description

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._gate("set_remote_description")
        if self.reject_remote:
            raise SignalingError("Malformed session description")
        self.remote = description

    async def add_ice_candidate(self, candidate: IceCandidateInit) -> None:
        assert self.remote is not None, "candidate applied before remote description"
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True


class FakePeerFactory:
    def __init__(self, *, reject_remote: bool = False, hold: str | None = None) -> None:
        self.reject_remote = reject_remote
        self.hold = hold
        self.created: list[FakePeerConnection] = []

    def create(self, *, on_ice_candidate, on_track, on_connection_state) -> FakePeerConnection:
        pc = FakePeerConnection(
            on_ice_candidate, on_track, on_connection_state,
            reject_remote=self.reject_remote, hold=self.hold,
        )
        self.created.append(pc)
        return pc

    @property
    def last(self) -> FakePeerConnection:
        return self.created[-1]


@dataclass
class RecordingAlertSink:
    rings: int = 0
    stops: int = 0
    notified: list[Message] = field(default_factory=list)

    def ring(self) -> None:
        self.rings += 1

    def stop_ringing(self) -> None:
        self.stops += 1

    def notify_message(self, message: Message) -> None:
        self.notified.append(message)


# -- REST --------------------------------------------------------------------


def make_message(
    *,
    sender: str = "bob",
    recipient: str = "alice",
    text: str = "hello",
    timestamp: datetime = T0,
    status: MessageStatus = MessageStatus.DELIVERED,
    message_id: str | None = None,
    temp_id: str | None = None,
) -> Message:
    return Message(
        id=message_id,
        temp_id=temp_id,
        sender_id=sender,
        recipient_id=recipient,
        conversation_id=conversation_id(sender, recipient),
        text=text,
        timestamp=timestamp,
        status=status,
    )


@dataclass
class FakeHistoryApi:
    conversations: list[Conversation] = field(default_factory=list)
    history: dict[str, list[Message]] = field(default_factory=dict)
    deleted: list[str] = field(default_factory=list)
    edited: list[tuple[str, str]] = field(default_factory=list)
    marked_read: list[str] = field(default_factory=list)
    fail_mark_read: bool = False

    async def fetch_conversations(self) -> list[Conversation]:
        return list(self.conversations)

    async def fetch_history(self, peer_id: str) -> list[Message]:
        return list(self.history.get(peer_id, []))

    async def delete_message(self, message_id: str) -> None:
        self.deleted.append(message_id)

    async def edit_message(self, message_id: str, text: str) -> Message:
        self.edited.append((message_id, text))
        return make_message(sender="alice", recipient="bob", text=text, message_id=message_id)

    async def mark_conversation_read(self, peer_id: str) -> None:
        if self.fail_mark_read:
            raise ApiError("read state unavailable", status=503)
        self.marked_read.append(peer_id)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def history() -> FakeHistoryApi:
    return FakeHistoryApi()
