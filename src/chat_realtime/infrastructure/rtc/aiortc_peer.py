"""aiortc-backed peer connection, media capture and track adapters."""
from __future__ import annotations

import logging
from typing import Any

from aiortc import (
    InvalidStateError,
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from chat_realtime.application.exceptions import (
    MediaPermissionError,
    MediaUnavailableError,
    SignalingError,
)
from chat_realtime.application.ports.rtc import OnConnectionState, OnIceCandidate, OnTrack
from chat_realtime.domain.value_objects.enums import CallType
from chat_realtime.infrastructure.ws.protocol import IceCandidateInit, SessionDescription

logger = logging.getLogger(__name__)


class ToggleableTrack(MediaStreamTrack):
    """Relays a source track, blanking frames while ``enabled`` is False."""

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    async def recv(self) -> Any:
        frame = await self._source.recv()
        if not self.enabled:
            for index, plane in enumerate(frame.planes):
                fill = 128 if self.kind == "video" and index > 0 else 0
                plane.update(bytes([fill]) * plane.buffer_size)
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class CapturedStream:
    def __init__(self, tracks: list[ToggleableTrack]) -> None:
        self._tracks = tracks

    @property
    def tracks(self) -> list[ToggleableTrack]:
        return self._tracks


class AiortcMediaSource:
    """Opens capture devices through FFmpeg (e.g. ``pulse`` / ``v4l2``)."""

    def __init__(
        self,
        *,
        audio_device: str = "default",
        audio_format: str = "pulse",
        video_device: str = "/dev/video0",
        video_format: str = "v4l2",
    ) -> None:
        self._audio = (audio_device, audio_format)
        self._video = (video_device, video_format)

    async def acquire(self, call_type: CallType) -> CapturedStream:
        tracks: list[ToggleableTrack] = []
        audio = self._open(*self._audio)
        if audio.audio is not None:
            tracks.append(ToggleableTrack(audio.audio))
        if call_type == CallType.VIDEO:
            video = self._open(*self._video)
            if video.video is not None:
                tracks.append(ToggleableTrack(video.video))
        if not tracks:
            raise MediaUnavailableError("Capture devices produced no tracks")
        return CapturedStream(tracks)

    @staticmethod
    def _open(device: str, fmt: str) -> MediaPlayer:
        try:
            return MediaPlayer(device, format=fmt)
        except PermissionError as exc:
            raise MediaPermissionError(f"Access to {device} denied") from exc
        except Exception as exc:
            raise MediaUnavailableError(f"Cannot open {device} ({fmt}): {exc}") from exc


def _to_wire(description: RTCSessionDescription) -> SessionDescription:
    return SessionDescription(type=description.type, sdp=description.sdp)


class AiortcPeerConnection:
    def __init__(
        self,
        pc: RTCPeerConnection,
        *,
        on_ice_candidate: OnIceCandidate,
        on_track: OnTrack,
        on_connection_state: OnConnectionState,
    ) -> None:
        self._pc = pc
        # aiortc gathers every candidate while applying the local description and
        # embeds them in the SDP, so on_ice_candidate is never invoked.
        self._on_ice_candidate = on_ice_candidate

        @pc.on("track")
        def _track(track: MediaStreamTrack) -> None:
            on_track(track)

        @pc.on("connectionstatechange")
        def _state() -> None:
            on_connection_state(pc.connectionState)

    def add_transceiver(self, kind: str, direction: str = "sendrecv") -> None:
        self._pc.addTransceiver(kind, direction=direction)

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        try:
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
        except InvalidStateError as exc:
            raise SignalingError(f"Cannot create offer: {exc}") from exc
        return _to_wire(self._pc.localDescription)

    async def create_answer(self) -> SessionDescription:
        try:
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except InvalidStateError as exc:
            raise SignalingError(f"Cannot create answer: {exc}") from exc
        return _to_wire(self._pc.localDescription)

    async def set_local_description(self, description: SessionDescription) -> None:
        current = self._pc.localDescription
        if current is not None and current.type == description.type:
            return
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def set_remote_description(self, description: SessionDescription) -> None:
        try:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type),
            )
        except (ValueError, TypeError, InvalidStateError) as exc:
            raise SignalingError(f"Invalid remote description: {exc}") from exc

    async def add_ice_candidate(self, candidate: IceCandidateInit) -> None:
        sdp = candidate.candidate
        if not sdp:
            return
        if sdp.startswith("candidate:"):
            sdp = sdp.split(":", 1)[1]
        try:
            parsed = candidate_from_sdp(sdp)
        except (ValueError, IndexError) as exc:
            raise SignalingError(f"Malformed ICE candidate: {exc}") from exc
        parsed.sdpMid = candidate.sdp_mid
        parsed.sdpMLineIndex = candidate.sdp_m_line_index
        await self._pc.addIceCandidate(parsed)

    async def close(self) -> None:
        await self._pc.close()


class AiortcPeerFactory:
    def __init__(self, ice_servers: list[str]) -> None:
        self._configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in ice_servers],
        )

    def create(
        self,
        *,
        on_ice_candidate: OnIceCandidate,
        on_track: OnTrack,
        on_connection_state: OnConnectionState,
    ) -> AiortcPeerConnection:
        return AiortcPeerConnection(
            RTCPeerConnection(configuration=self._configuration),
            on_ice_candidate=on_ice_candidate,
            on_track=on_track,
            on_connection_state=on_connection_state,
        )
