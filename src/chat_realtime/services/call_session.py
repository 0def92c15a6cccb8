"""Peer-to-peer call negotiation over the chat transport.

``CallSession`` is one call's state machine::

    calling  --answer-->  connected  --end-->  ended
    incoming --accept-->  connected
    calling/incoming/connected  --failure-->  failed

``CallCoordinator`` keeps at most one non-terminal session and routes the
signaling events to it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable

from chat_realtime.application.exceptions import (
    CallBusyError,
    MediaError,
    NotConnectedError,
    SignalingError,
    ValidationError,
)
from chat_realtime.application.ports.clock import Scheduler, TimerHandle, call_every
from chat_realtime.application.ports.media import AlertSink, LocalStream, MediaSource
from chat_realtime.application.ports.rtc import PeerConnection, PeerConnectionFactory
from chat_realtime.application.store import Store
from chat_realtime.domain.entities.call import CallSnapshot
from chat_realtime.domain.value_objects.enums import (
    CallDirection,
    CallState,
    CallType,
    ConnectionStatus,
)
from chat_realtime.infrastructure.ws.protocol import (
    AnswerCall,
    CallAnswered,
    CallEnded,
    CallFailed,
    CallMade,
    CallUser,
    EndCall,
    IceCandidateInit,
    IceCandidateReceived,
    SendIceCandidate,
    SessionDescription,
)
from chat_realtime.services.connection_manager import ConnectionManager, ConnectionState

logger = logging.getLogger(__name__)

ICE_FAILURE_STATES = frozenset({"failed"})


class CallSession:
    def __init__(
        self,
        connection: ConnectionManager,
        peer_factory: PeerConnectionFactory,
        media: MediaSource,
        alerts: AlertSink,
        scheduler: Scheduler,
        *,
        peer_id: str,
        call_type: CallType,
        incoming: bool,
        peer_session_id: str | None = None,
        ring_interval: float = 3.0,
    ) -> None:
        self._connection = connection
        self._peer_factory = peer_factory
        self._media = media
        self._alerts = alerts
        self._scheduler = scheduler
        self._ring_interval = ring_interval

        direction = CallDirection.INCOMING if incoming else CallDirection.OUTGOING
        self._store: Store[CallSnapshot] = Store(CallSnapshot(
            peer_id=peer_id,
            call_type=call_type,
            direction=direction,
            state=CallState.INCOMING if incoming else CallState.CALLING,
            peer_session_id=peer_session_id,
            video_enabled=call_type == CallType.VIDEO,
        ))

        self._pc: PeerConnection | None = None
        self._local: LocalStream | None = None
        self._remote_tracks: list[Any] = []
        self._ice_queue: tuple[IceCandidateInit, ...] = ()
        self._remote_description_set = False
        self._started = False
        self._finished = False
        self._ring_timer: TimerHandle | None = None
        self._duration_timer: TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()

        if incoming:
            self._start_ringing()

    # -- observation -------------------------------------------------------

    @property
    def snapshot(self) -> CallSnapshot:
        return self._store.state

    @property
    def state(self) -> CallState:
        return self._store.state.state

    @property
    def peer_id(self) -> str:
        return self._store.state.peer_id

    @property
    def is_terminal(self) -> bool:
        return self._store.state.state.is_terminal

    @property
    def local_stream(self) -> LocalStream | None:
        return self._local

    def subscribe(self, listener: Callable[[CallSnapshot], None]) -> Callable[[], None]:
        return self._store.subscribe(listener)

    def _update(self, **changes: Any) -> None:
        self._store.update(lambda s: replace(s, **changes))

    # -- negotiation -------------------------------------------------------

    async def start(self, remote_offer: SessionDescription | None = None) -> None:
        """Build the peer connection, acquire media and send the offer or answer.

        Setup stops at the first await after which the call has terminated;
        no signaling is sent for a call that already ended.
        """
        snap = self.snapshot
        if self._started or snap.state.is_terminal:
            raise SignalingError(f"Call with {snap.peer_id} already started")
        incoming = snap.direction == CallDirection.INCOMING
        if incoming and remote_offer is None:
            raise ValidationError("Incoming call needs the remote offer")
        self._started = True

        pc = self._pc = self._peer_factory.create(
            on_ice_candidate=self._on_local_candidate,
            on_track=self._on_remote_track,
            on_connection_state=self._on_connection_state,
        )
        # Transceivers before media so the m-lines do not depend on permissions.
        pc.add_transceiver("audio", "sendrecv")
        if snap.call_type == CallType.VIDEO:
            pc.add_transceiver("video", "sendrecv")

        await self._acquire_media(pc, snap.call_type)
        if self._finished:
            return

        try:
            if incoming:
                assert remote_offer is not None
                if not await self._apply_remote_description(pc, remote_offer):
                    return
                answer = await pc.create_answer()
                if self._finished:
                    return
                await pc.set_local_description(answer)
                if self._finished:
                    return
                to = self.snapshot.peer_session_id or snap.peer_id
                self._connection.send(AnswerCall(to=to, answer=answer))
                self._enter_connected()
            else:
                offer = await pc.create_offer()
                if self._finished:
                    return
                await pc.set_local_description(offer)
                if self._finished:
                    logger.info("Call to %s ended before the offer was sent", snap.peer_id)
                    return
                self._connection.send(CallUser(
                    user_to_call=snap.peer_id, offer=offer, call_type=snap.call_type,
                ))
                logger.info("Calling %s (%s)", snap.peer_id, snap.call_type)
        except (SignalingError, NotConnectedError) as exc:
            logger.warning("Call setup with %s failed: %s", snap.peer_id, exc.detail)
            await self.fail(exc.detail or "Call setup failed")

    async def _acquire_media(self, pc: PeerConnection, call_type: CallType) -> None:
        try:
            stream = await self._media.acquire(call_type)
        except MediaError as exc:
            logger.warning("Continuing call without local media: %s", exc.detail)
            self._update(error=exc.detail or "Media unavailable", video_enabled=False)
            return
        if self._finished:
            for track in stream.tracks:
                track.stop()
            return
        self._local = stream
        for track in stream.tracks:
            pc.add_track(track)
        self._update(has_local_media=bool(stream.tracks))

    async def handle_answer(self, answer: SessionDescription, peer_session_id: str | None = None) -> None:
        snap = self.snapshot
        pc = self._pc
        if snap.direction != CallDirection.OUTGOING or snap.state != CallState.CALLING or pc is None:
            logger.debug("Ignoring answer in state %s", snap.state)
            return
        if peer_session_id:
            self._update(peer_session_id=peer_session_id)
        try:
            applied = await self._apply_remote_description(pc, answer)
        except SignalingError as exc:
            await self.fail(exc.detail or "Invalid answer")
            return
        if applied:
            self._enter_connected()

    async def add_remote_candidate(self, candidate: IceCandidateInit) -> None:
        if self.is_terminal:
            return
        if not self._remote_description_set or self._pc is None:
            self._ice_queue = (*self._ice_queue, candidate)
            self._update(pending_candidates=len(self._ice_queue))
            return
        await self._add_candidate(self._pc, candidate)

    async def _apply_remote_description(self, pc: PeerConnection, description: SessionDescription) -> bool:
        """Returns False when the call terminated while the description was applied."""
        await pc.set_remote_description(description)
        if self._finished:
            return False
        await self._drain_ice_queue(pc)
        if self._finished:
            return False
        self._remote_description_set = True
        return True

    async def _drain_ice_queue(self, pc: PeerConnection) -> None:
        # Candidates that arrive while draining join the tail of the same queue.
        while self._ice_queue and not self._finished:
            candidate, self._ice_queue = self._ice_queue[0], self._ice_queue[1:]
            await self._add_candidate(pc, candidate)
        if not self._finished:
            self._update(pending_candidates=0)

    async def _add_candidate(self, pc: PeerConnection, candidate: IceCandidateInit) -> None:
        try:
            await pc.add_ice_candidate(candidate)
        except SignalingError as exc:
            logger.warning("Rejected ICE candidate from %s: %s", self.peer_id, exc.detail)


    # -- peer connection callbacks -----------------------------------------

    def _on_local_candidate(self, candidate: IceCandidateInit) -> None:
        if self._finished:
            return
        snap = self.snapshot
        self._connection.emit(SendIceCandidate(
            candidate=candidate,
            to=snap.peer_session_id,
            target_user_id=snap.peer_id,
        ))

    def _on_remote_track(self, track: Any) -> None:
        if self._finished:
            return
        self._remote_tracks.append(track)
        self._update(has_remote_media=True)

    def _on_connection_state(self, state: str) -> None:
        if state in ICE_FAILURE_STATES and not self._finished:
            logger.warning("ICE failed for call with %s", self.peer_id)
            self._spawn(self.fail("ICE connection failed"))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -- timers ------------------------------------------------------------

    def _start_ringing(self) -> None:
        self._alerts.ring()
        self._ring_timer = call_every(self._scheduler, self._ring_interval, self._alerts.ring)
        self._update(ringing=True)

    def _stop_ringing(self) -> None:
        if self._ring_timer is not None:
            self._ring_timer.cancel()
            self._ring_timer = None
            self._alerts.stop_ringing()
            self._update(ringing=False)

    def _enter_connected(self) -> None:
        self._stop_ringing()
        self._update(state=CallState.CONNECTED, duration_seconds=0)
        self._duration_timer = call_every(self._scheduler, 1.0, self._tick_duration)
        logger.info("Call with %s connected", self.peer_id)

    def _tick_duration(self) -> None:
        self._store.update(lambda s: replace(s, duration_seconds=s.duration_seconds + 1))

    # -- media controls ----------------------------------------------------

    def set_muted(self, muted: bool) -> None:
        self._set_tracks_enabled("audio", not muted)
        self._update(muted=muted)

    def set_video_enabled(self, enabled: bool) -> None:
        if self.snapshot.call_type != CallType.VIDEO:
            return
        self._set_tracks_enabled("video", enabled)
        self._update(video_enabled=enabled)

    def _set_tracks_enabled(self, kind: str, enabled: bool) -> None:
        if self._local is None:
            return
        for track in self._local.tracks:
            if track.kind == kind:
                track.enabled = enabled

    # -- termination -------------------------------------------------------

    async def hang_up(self) -> None:
        """Local end: tell the peer, then clean up."""
        if self._finished:
            return
        snap = self.snapshot
        self._connection.emit(EndCall(to=snap.peer_id, socket_id=snap.peer_session_id))
        await self._terminate(CallState.ENDED)

    async def handle_remote_end(self) -> None:
        await self._terminate(CallState.ENDED)

    async def fail(self, reason: str) -> None:
        await self._terminate(CallState.FAILED, reason)

    async def _terminate(self, state: CallState, error: str | None = None) -> None:
        if self._finished:
            return
        self._finished = True

        self._stop_ringing()
        if self._duration_timer is not None:
            self._duration_timer.cancel()
            self._duration_timer = None
        if self._local is not None:
            for track in self._local.tracks:
                track.stop()
        self._local = None
        self._remote_tracks.clear()
        self._ice_queue = ()

        pc, self._pc = self._pc, None
        changes: dict[str, Any] = {
            "state": state,
            "has_local_media": False,
            "has_remote_media": False,
            "pending_candidates": 0,
        }
        if error is not None:
            changes["error"] = error
        self._update(**changes)
        logger.info("Call with %s %s%s", self.peer_id, state, f" ({error})" if error else "")

        if pc is not None:
            try:
                await pc.close()
            except Exception:
                logger.warning("Error closing peer connection", exc_info=True)


class CallCoordinator:
    """Owns the single active call and routes signaling events to it."""

    def __init__(
        self,
        connection: ConnectionManager,
        peer_factory: PeerConnectionFactory,
        media: MediaSource,
        alerts: AlertSink,
        scheduler: Scheduler,
        *,
        ring_interval: float = 3.0,
    ) -> None:
        self._connection = connection
        self._peer_factory = peer_factory
        self._media = media
        self._alerts = alerts
        self._scheduler = scheduler
        self._ring_interval = ring_interval
        self._session: CallSession | None = None
        self._pending_offer: SessionDescription | None = None
        self._listeners: list[Callable[[CallSession], None]] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._unsubscribers: list[Callable[[], None]] = [
            connection.subscribe(self._on_connection),
            connection.on(CallMade, self._on_call_made),
            connection.on(CallAnswered, self._on_call_answered),
            connection.on(IceCandidateReceived, self._on_ice_candidate),
            connection.on(CallEnded, self._on_call_ended),
            connection.on(CallFailed, self._on_call_failed),
        ]

    @property
    def session(self) -> CallSession | None:
        return self._session

    @property
    def busy(self) -> bool:
        return self._session is not None and not self._session.is_terminal

    def on_session(self, listener: Callable[[CallSession], None]) -> Callable[[], None]:
        """Called whenever a new session (outgoing or incoming) is created."""
        self._listeners.append(listener)

        def _off() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _off

    def _new_session(
        self,
        peer_id: str,
        call_type: CallType,
        *,
        incoming: bool,
        peer_session_id: str | None = None,
    ) -> CallSession:
        session = CallSession(
            self._connection,
            self._peer_factory,
            self._media,
            self._alerts,
            self._scheduler,
            peer_id=peer_id,
            call_type=call_type,
            incoming=incoming,
            peer_session_id=peer_session_id,
            ring_interval=self._ring_interval,
        )
        self._session = session
        for listener in list(self._listeners):
            listener(session)
        return session

    # -- user commands -----------------------------------------------------

    async def start_call(self, peer_id: str, call_type: CallType = CallType.AUDIO) -> CallSession:
        if not self._connection.identity:
            raise ValidationError("No active identity")
        if not peer_id:
            raise ValidationError("Peer is required")
        if self.busy:
            raise CallBusyError("Another call is in progress")
        session = self._new_session(peer_id, call_type, incoming=False)
        await session.start()
        return session

    async def accept(self) -> CallSession:
        session = self._session
        if session is None or session.state != CallState.INCOMING or self._pending_offer is None:
            raise ValidationError("No incoming call to accept")
        offer, self._pending_offer = self._pending_offer, None
        await session.start(remote_offer=offer)
        return session

    async def reject(self) -> None:
        session = self._session
        if session is not None and session.state == CallState.INCOMING:
            self._pending_offer = None
            await session.hang_up()

    async def hang_up(self) -> None:
        if self._session is not None:
            self._pending_offer = None
            await self._session.hang_up()

    # -- signaling events --------------------------------------------------

    async def _on_call_made(self, event: CallMade) -> None:
        if self.busy:
            logger.info("Busy, declining call from %s", event.from_)
            self._connection.emit(EndCall(to=event.from_, socket_id=event.socket))
            return
        self._pending_offer = event.offer
        self._new_session(event.from_, event.call_type, incoming=True, peer_session_id=event.socket)
        logger.info("Incoming %s call from %s", event.call_type, event.from_)

    async def _on_call_answered(self, event: CallAnswered) -> None:
        if self._session is not None:
            await self._session.handle_answer(event.answer, event.socket)

    async def _on_ice_candidate(self, event: IceCandidateReceived) -> None:
        if self._session is None or self._session.is_terminal:
            logger.debug("Dropping ICE candidate with no active call")
            return
        await self._session.add_remote_candidate(event.candidate)

    async def _on_call_ended(self, event: CallEnded) -> None:
        if self._session is not None:
            self._pending_offer = None
            await self._session.handle_remote_end()

    async def _on_call_failed(self, event: CallFailed) -> None:
        if self._session is not None:
            self._pending_offer = None
            await self._session.fail(event.reason)

    def _on_connection(self, state: ConnectionState) -> None:
        # Transient drops are left to the reconnection policy.
        if state.status != ConnectionStatus.ERROR or not self.busy:
            return
        assert self._session is not None
        task = asyncio.ensure_future(self._session.fail(state.error or "Connection lost"))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
