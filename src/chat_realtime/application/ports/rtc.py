from __future__ import annotations

from typing import Any, Callable, Protocol

from chat_realtime.application.ports.media import MediaTrack
from chat_realtime.infrastructure.ws.protocol import IceCandidateInit, SessionDescription

OnIceCandidate = Callable[[IceCandidateInit], None]
OnTrack = Callable[[Any], None]
OnConnectionState = Callable[[str], None]


class PeerConnection(Protocol):
    def add_transceiver(self, kind: str, direction: str = "sendrecv") -> None: ...

    def add_track(self, track: MediaTrack) -> None: ...

    async def create_offer(self) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def set_local_description(self, description: SessionDescription) -> None: ...

    async def set_remote_description(self, description: SessionDescription) -> None:
        """Raises SignalingError for a malformed description."""
        ...

    async def add_ice_candidate(self, candidate: IceCandidateInit) -> None: ...

    async def close(self) -> None: ...


class PeerConnectionFactory(Protocol):
    def create(
        self,
        *,
        on_ice_candidate: OnIceCandidate,
        on_track: OnTrack,
        on_connection_state: OnConnectionState,
    ) -> PeerConnection: ...
