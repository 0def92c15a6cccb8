from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from chat_realtime.application.exceptions import (
    CallBusyError,
    MediaPermissionError,
    TransportError,
    ValidationError,
)
from chat_realtime.domain.value_objects.enums import CallDirection, CallState, CallType
from chat_realtime.infrastructure.ws.protocol import (
    AnswerCall,
    CallAnswered,
    CallEnded,
    CallFailed,
    CallMade,
    CallUser,
    EndCall,
    IceCandidateReceived,
    SendIceCandidate,
)
from chat_realtime.services.call_session import CallCoordinator
from chat_realtime.services.connection_manager import ConnectionManager
from tests.conftest import (
    FakeMedia,
    FakePeerFactory,
    FakeSession,
    FakeTransport,
    answer,
    candidate,
    connect,
    drain,
    eventually,
    make_connection,
    offer,
)


@dataclass
class Harness:
    transport: FakeTransport
    conn: ConnectionManager
    peers: FakePeerFactory
    media: FakeMedia
    calls: CallCoordinator


def _build(scheduler, alerts, *, transport=None, media=None, peers=None, attempts=3) -> Harness:
    transport = transport or FakeTransport()
    conn = make_connection(transport, attempts=attempts)
    peers = peers or FakePeerFactory()
    media = media or FakeMedia()
    calls = CallCoordinator(conn, peers, media, alerts, scheduler, ring_interval=3.0)
    return Harness(transport, conn, peers, media, calls)


def _incoming(call_type: CallType = CallType.AUDIO, caller: str = "bob", socket: str = "sock-b") -> CallMade:
    return CallMade(offer=offer(), from_=caller, socket=socket, call_type=call_type)


async def _close(h: Harness) -> None:
    h.calls.close()
    await h.conn.disconnect()


@pytest.mark.asyncio
async def test_outgoing_call_buffers_candidates_until_answer(scheduler, alerts):
    h = _build(scheduler, alerts)
    await connect(h.conn)

    session = await h.calls.start_call("bob", CallType.AUDIO)
    pc = h.peers.last

    assert session.state == CallState.CALLING
    assert h.transport.session.sent_of(CallUser) == [
        CallUser(user_to_call="bob", offer=offer(), call_type=CallType.AUDIO),
    ]
    for n in (1, 2, 3):
        await h.conn.dispatch(IceCandidateReceived(candidate=candidate(n), from_="sock-b"))
    assert pc.candidates == []
    assert session.snapshot.pending_candidates == 3

    await h.conn.dispatch(CallAnswered(answer=answer(), socket="sock-b"))

    assert pc.remote == answer()
    assert pc.candidates == [candidate(1), candidate(2), candidate(3)]
    assert session.snapshot.pending_candidates == 0
    assert session.state == CallState.CONNECTED
    assert session.snapshot.peer_session_id == "sock-b"

    await h.conn.dispatch(IceCandidateReceived(candidate=candidate(4), from_="sock-b"))
    assert pc.candidates[-1] == candidate(4)
    assert len(pc.candidates) == 4
    await _close(h)


@pytest.mark.asyncio
async def test_transceivers_are_added_before_media(scheduler, alerts):
    h = _build(scheduler, alerts)
    await connect(h.conn)

    await h.calls.start_call("bob", CallType.VIDEO)

    assert h.peers.last.calls == [
        ("add_transceiver", "audio"),
        ("add_transceiver", "video"),
        ("add_track", "audio"),
        ("add_track", "video"),
    ]
    assert h.calls.session is not None
    assert h.calls.session.snapshot.has_local_media
    await _close(h)


@pytest.mark.asyncio
async def test_local_candidates_are_sent_to_peer(scheduler, alerts):
    h = _build(scheduler, alerts)
    await connect(h.conn)
    await h.calls.start_call("bob")
    pc = h.peers.last

    pc.on_ice_candidate(candidate(1))
    await h.conn.dispatch(CallAnswered(answer=answer(), socket="sock-b"))
    pc.on_ice_candidate(candidate(2))

    sent = h.transport.session.sent_of(SendIceCandidate)
    assert [(e.to, e.target_user_id) for e in sent] == [(None, "bob"), ("sock-b", "bob")]
    await _close(h)


@pytest.mark.asyncio
async def test_answer_ignored_unless_calling(scheduler, alerts):
    h = _build(scheduler, alerts)
    await connect(h.conn)
    await h.conn.dispatch(_incoming())

    await h.conn.dispatch(CallAnswered(answer=answer(), socket="sock-x"))

    assert h.calls.session is not None
    assert h.calls.session.state == CallState.INCOMING
    assert h.peers.created == []
    await _close(h)


@pytest.mark.asyncio
async def test_incoming_call_rings_until_accepted(scheduler, alerts):
    h = _build(scheduler, alerts)
    await connect(h.conn)
    await h.conn.dispatch(_incoming(CallType.VIDEO))
    session = h.calls.session
    assert session is not None
    assert session.snapshot.direction == CallDirection.INCOMING
    assert session.snapshot.ringing
    assert alerts.rings == 1

    scheduler.advance(3)
    assert alerts.rings == 2
    await h.conn.dispatch(IceCandidateReceived(candidate=candidate(1), from_="sock-b"))

    await h.calls.accept()
    pc = h.peers.last

    assert session.state == CallState.CONNECTED
    assert pc.remote == offer()
    assert pc.candidates == [candidate(1)]
    assert h.transport.session.sent_of(AnswerCall) == [AnswerCall(to="sock-b", answer=answer())]
    assert alerts.stops == 1
    assert not session.snapshot.ringing

    scheduler.advance(3)
    assert alerts.rings == 2
    assert session.snapshot.duration_seconds == 3
    await _close(h)


@pytest.mark.asyncio
async def test_accept_without_incoming_call(scheduler, alerts):
    h = _build(scheduler, alerts)
    with pytest.raises(ValidationError):
        await h.calls.accept()


@pytest.mark.asyncio
async def test_reject_sends_end_call(scheduler, alerts):
    h = _build(scheduler, alerts)
    await connect(h.conn)
    await h.conn.dispatch(_incoming())

    await h.calls.reject()

    assert h.calls.session is not None
    assert h.calls.session.state == CallState.ENDED
    assert h.transport.session.sent_of(EndCall) == [EndCall(to="bob", socket_id="sock-b")]
    assert alerts.stops == 1
    assert scheduler.pending == 0
    assert not h.calls.busy
    await _close(h)


@pytest.mark.asyncio
async def test_second_incoming_call_is_declined_while_busy(scheduler, alerts):
    h = _build(scheduler, alerts)
    await connect(h.conn)
    await h.calls.start_call("bob")

    await h.conn.dispatch(_incoming(caller="carol", socket="sock-c"))

    assert h.calls.session is not None
    assert h.calls.session.peer_id == "bob"
    assert h.transport.session.sent_of(EndCall) == [EndCall(to="carol", socket_id="sock-c")]
    with pytest.raises(CallBusyError):
        await h.calls.start_call("dave")
    await _close(h)


@pytest.mark.asyncio
async def test_start_call_requires_identity(scheduler, alerts):
    h = _build(scheduler, alerts)
    with pytest.raises(ValidationError):
        await h.calls.start_call("bob")


@pytest.mark.asyncio
async def test_media_denial_continues_without_local_tracks(scheduler, alerts):
    h = _build(scheduler, alerts, media=FakeMedia(MediaPermissionError("Permission denied")))
    await connect(h.conn)

    session = await h.calls.start_call("bob", CallType.VIDEO)

    assert session.state == CallState.CALLING
    assert session.snapshot.error == "Permission denied"
    assert not session.snapshot.has_local_media
    assert len(h.transport.session.sent_of(CallUser)) == 1
    assert ("add_track", "audio") not in h.peers.last.calls
    await _close(h)


@pytest.mark.asyncio
async def test_hang_up_cleans_up_once(scheduler, alerts):
    h = _build(scheduler, alerts)
    await connect(h.conn)
    session = await h.calls.start_call("bob")
    await h.conn.dispatch(CallAnswered(answer=answer(), socket="sock-b"))
    pc = h.peers.last
    tracks = h.media.streams[0].tracks

    await h.calls.hang_up()
    await session.hang_up()

    assert session.state == CallState.ENDED
    assert h.transport.session.sent_of(EndCall) == [EndCall(to="bob", socket_id="sock-b")]
    assert all(t.stopped for t in tracks)
    assert pc.closed
    assert scheduler.pending == 0
    await _close(h)


@pytest.mark.asyncio
async def test_remote_end_and_failure(scheduler, alerts):
    h = _build(scheduler, alerts)
    await connect(h.conn)
    first = await h.calls.start_call("bob")
    await h.conn.dispatch(CallEnded(from_="bob"))
    assert first.state == CallState.ENDED
    assert h.transport.session.sent_of(EndCall) == []

    second = await h.calls.start_call("carol")
    await h.conn.dispatch(CallFailed(reason="User is offline"))
    assert second.state == CallState.FAILED
    assert second.snapshot.error == "User is offline"
    await _close(h)


@pytest.mark.asyncio
async def test_ice_failure_fails_call(scheduler, alerts):
    h = _build(scheduler, alerts)
    await connect(h.conn)
    session = await h.calls.start_call("bob")

    h.peers.last.on_connection_state("failed")
    await drain()

    assert session.state == CallState.FAILED
    assert session.snapshot.error == "ICE connection failed"
    assert h.peers.last.closed
    await _close(h)


@pytest.mark.asyncio
async def test_malformed_offer_fails_incoming_call(scheduler, alerts):
    h = _build(scheduler, alerts, peers=FakePeerFactory(reject_remote=True))
    await connect(h.conn)
    await h.conn.dispatch(_incoming())

    session = await h.calls.accept()

    assert session.state == CallState.FAILED
    assert h.peers.last.closed
    assert h.transport.session.sent_of(AnswerCall) == []
    assert alerts.stops == 1
    await _close(h)


@pytest.mark.asyncio
async def test_mute_and_video_toggle_tracks(scheduler, alerts):
    h = _build(scheduler, alerts)
    await connect(h.conn)
    session = await h.calls.start_call("bob", CallType.VIDEO)
    audio, video = h.media.streams[0].tracks

    session.set_muted(True)
    session.set_video_enabled(False)

    assert not audio.enabled
    assert not video.enabled
    assert session.snapshot.muted
    assert not session.snapshot.video_enabled

    session.set_muted(False)
    assert audio.enabled
    await _close(h)


@pytest.mark.asyncio
async def test_exhausted_reconnection_fails_call_once(scheduler, alerts):
    transport = FakeTransport(FakeSession("s-1"), fail_with=TransportError("refused"))
    h = _build(scheduler, alerts, transport=transport, attempts=1)
    await connect(h.conn)
    session = await h.calls.start_call("bob")
    await h.conn.dispatch(CallAnswered(answer=answer(), socket="sock-b"))
    states: list[CallState] = []
    session.subscribe(lambda snap: states.append(snap.state))
    tracks = h.media.streams[0].tracks

    transport.session.drop()
    await eventually(lambda: session.is_terminal)
    await drain()

    assert session.state == CallState.FAILED
    assert states.count(CallState.FAILED) == 1
    assert all(t.stopped for t in tracks)
    assert h.peers.last.closed
    await _close(h)


@pytest.mark.asyncio
async def test_hang_up_during_offer_never_sends_call_user(scheduler, alerts):
    peers = FakePeerFactory(hold="set_local_description")
    h = _build(scheduler, alerts, peers=peers)
    await connect(h.conn)

    pending = asyncio.ensure_future(h.calls.start_call("bob"))
    await eventually(lambda: bool(peers.created) and peers.last.held.is_set())
    await h.calls.hang_up()
    peers.last.release.set()
    session = await pending

    assert session.state == CallState.ENDED
    assert h.transport.session.sent_of(CallUser) == []
    assert h.transport.session.sent_of(EndCall) == [EndCall(to="bob", socket_id=None)]
    assert peers.last.closed
    await _close(h)


@pytest.mark.asyncio
async def test_remote_end_during_accept_stops_setup(scheduler, alerts):
    peers = FakePeerFactory(hold="set_remote_description")
    h = _build(scheduler, alerts, peers=peers)
    await connect(h.conn)
    await h.conn.dispatch(_incoming())

    pending = asyncio.ensure_future(h.calls.accept())
    await eventually(lambda: bool(peers.created) and peers.last.held.is_set())
    await h.conn.dispatch(CallEnded(from_="bob"))
    peers.last.release.set()
    session = await pending

    assert session.state == CallState.ENDED
    assert session.snapshot.duration_seconds == 0
    assert h.transport.session.sent_of(AnswerCall) == []
    assert peers.last.closed
    assert scheduler.pending == 0
    await _close(h)
