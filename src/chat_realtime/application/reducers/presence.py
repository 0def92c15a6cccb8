from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable


@dataclass(frozen=True, slots=True)
class PresenceState:
    online: frozenset[str] = field(default_factory=frozenset)
    typing: frozenset[str] = field(default_factory=frozenset)


def seed_online(state: PresenceState, user_ids: Iterable[str]) -> PresenceState:
    online = frozenset(user_ids)
    if online == state.online:
        return state
    return replace(state, online=online)


def user_online(state: PresenceState, user_id: str) -> PresenceState:
    if user_id in state.online:
        return state
    return replace(state, online=state.online | {user_id})


def user_offline(state: PresenceState, user_id: str) -> PresenceState:
    if user_id not in state.online and user_id not in state.typing:
        return state
    return PresenceState(online=state.online - {user_id}, typing=state.typing - {user_id})


def typing_started(state: PresenceState, user_id: str) -> PresenceState:
    if user_id in state.typing:
        return state
    return replace(state, typing=state.typing | {user_id})


def typing_stopped(state: PresenceState, user_id: str) -> PresenceState:
    if user_id not in state.typing:
        return state
    return replace(state, typing=state.typing - {user_id})
