from __future__ import annotations

from dataclasses import dataclass

from chat_realtime.domain.value_objects.enums import CallDirection, CallState, CallType


@dataclass(frozen=True, slots=True)
class CallSnapshot:
    """What the UI renders for the current call."""

    peer_id: str
    call_type: CallType
    direction: CallDirection
    state: CallState
    peer_session_id: str | None = None
    error: str | None = None
    muted: bool = False
    video_enabled: bool = True
    has_local_media: bool = False
    has_remote_media: bool = False
    duration_seconds: int = 0
    ringing: bool = False
    pending_candidates: int = 0
