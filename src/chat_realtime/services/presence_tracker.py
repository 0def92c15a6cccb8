"""Online and typing state of peers, plus the local typing indicator."""
from __future__ import annotations

import logging
from typing import Callable

from chat_realtime.application.ports.clock import Scheduler, TimerHandle, call_every
from chat_realtime.application.reducers import presence as reducers
from chat_realtime.application.reducers.presence import PresenceState
from chat_realtime.application.store import Store
from chat_realtime.domain.value_objects.enums import ConnectionStatus
from chat_realtime.infrastructure.ws.protocol import (
    GetOnlineUsers,
    OnlineUsersList,
    TypingStart,
    TypingStop,
    UserOffline,
    UserOnline,
    UserTyping,
)
from chat_realtime.services.connection_manager import ConnectionManager, ConnectionState

logger = logging.getLogger(__name__)


class PresenceTracker:
    def __init__(
        self,
        connection: ConnectionManager,
        scheduler: Scheduler,
        *,
        typing_idle: float = 2.0,
        typing_expiry: float = 3.0,
        resync_interval: float = 30.0,
    ) -> None:
        self._connection = connection
        self._scheduler = scheduler
        self._typing_idle = typing_idle
        self._typing_expiry = typing_expiry
        self._resync_interval = resync_interval
        self._store: Store[PresenceState] = Store(PresenceState())

        self._expiry_timers: dict[str, TimerHandle] = {}
        self._idle_timers: dict[str, TimerHandle] = {}
        self._typing_to: set[str] = set()
        self._resync: TimerHandle | None = None
        self._last_status = connection.status

        self._unsubscribers: list[Callable[[], None]] = [
            connection.subscribe(self._on_connection),
            connection.on(OnlineUsersList, self._on_online_list),
            connection.on(UserOnline, self._on_user_online),
            connection.on(UserOffline, self._on_user_offline),
            connection.on(UserTyping, self._on_user_typing),
        ]

    @property
    def state(self) -> PresenceState:
        return self._store.state

    def subscribe(self, listener: Callable[[PresenceState], None]) -> Callable[[], None]:
        return self._store.subscribe(listener)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._store.state.online

    def is_typing(self, user_id: str) -> bool:
        return user_id in self._store.state.typing

    def mark_online(self, user_id: str) -> None:
        """Any traffic from a peer proves it is online."""
        self._store.update(lambda s: reducers.user_online(s, user_id))

    def request_snapshot(self) -> None:
        self._connection.emit(GetOnlineUsers())

    # -- connection --------------------------------------------------------

    def _on_connection(self, state: ConnectionState) -> None:
        previous, self._last_status = self._last_status, state.status
        if state.status == ConnectionStatus.CONNECTED and previous != ConnectionStatus.CONNECTED:
            self.request_snapshot()
            self._start_resync()
        elif state.status != ConnectionStatus.CONNECTED:
            self._stop_resync()
            self._typing_to.clear()
            for handle in self._idle_timers.values():
                handle.cancel()
            self._idle_timers.clear()

    def _start_resync(self) -> None:
        self._stop_resync()
        self._resync = call_every(self._scheduler, self._resync_interval, self._resync_tick)

    def _stop_resync(self) -> None:
        if self._resync is not None:
            self._resync.cancel()
            self._resync = None

    def _resync_tick(self) -> None:
        if self._connection.is_connected:
            logger.debug("Periodic presence resync")
            self.request_snapshot()

    # -- inbound -----------------------------------------------------------

    def _on_online_list(self, event: OnlineUsersList) -> None:
        self._store.update(lambda s: reducers.seed_online(s, event.user_ids))

    def _on_user_online(self, event: UserOnline) -> None:
        self._store.update(lambda s: reducers.user_online(s, event.user_id))

    def _on_user_offline(self, event: UserOffline) -> None:
        self._cancel(self._expiry_timers, event.user_id)
        self._store.update(lambda s: reducers.user_offline(s, event.user_id))

    def _on_user_typing(self, event: UserTyping) -> None:
        user_id = event.user_id
        self._cancel(self._expiry_timers, user_id)
        if not event.is_typing:
            self._store.update(lambda s: reducers.typing_stopped(s, user_id))
            return
        self._store.update(lambda s: reducers.typing_started(s, user_id))
        self._expiry_timers[user_id] = self._scheduler.call_later(
            self._typing_expiry, lambda: self._expire_typing(user_id),
        )

    def _expire_typing(self, user_id: str) -> None:
        self._expiry_timers.pop(user_id, None)
        self._store.update(lambda s: reducers.typing_stopped(s, user_id))

    # -- outbound typing ---------------------------------------------------

    def input_changed(self, peer_id: str, text: str) -> None:
        """Feed every change of the compose box for ``peer_id``."""
        if not text.strip():
            self.stop_typing(peer_id)
            return
        if peer_id not in self._typing_to:
            self.start_typing(peer_id)
        self._cancel(self._idle_timers, peer_id)
        self._idle_timers[peer_id] = self._scheduler.call_later(
            self._typing_idle, lambda: self._idle_elapsed(peer_id),
        )

    def start_typing(self, peer_id: str) -> None:
        self._typing_to.add(peer_id)
        self._connection.emit(TypingStart(recipient_id=peer_id))

    def stop_typing(self, peer_id: str) -> None:
        self._cancel(self._idle_timers, peer_id)
        if peer_id not in self._typing_to:
            return
        self._typing_to.discard(peer_id)
        self._connection.emit(TypingStop(recipient_id=peer_id))

    def _idle_elapsed(self, peer_id: str) -> None:
        self._idle_timers.pop(peer_id, None)
        self.stop_typing(peer_id)

    # -- teardown ----------------------------------------------------------

    @staticmethod
    def _cancel(timers: dict[str, TimerHandle], key: str) -> None:
        handle = timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._stop_resync()
        for timers in (self._expiry_timers, self._idle_timers):
            for handle in timers.values():
                handle.cancel()
            timers.clear()
        self._typing_to.clear()
