"""Composition root: wires the real-time core from settings."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from chat_realtime.application.policies.retry import reconnect_policy, send_retry_policy
from chat_realtime.application.ports.auth import TokenProvider
from chat_realtime.application.ports.clock import LoopScheduler, Scheduler
from chat_realtime.application.ports.history import HistoryApi
from chat_realtime.application.ports.media import AlertSink, MediaSource
from chat_realtime.application.ports.rtc import PeerConnectionFactory
from chat_realtime.application.ports.transport import Transport
from chat_realtime.config import Settings, settings
from chat_realtime.infrastructure.media.null import LoggingAlertSink, NullMediaSource
from chat_realtime.infrastructure.rest.api_client import ChatApiClient
from chat_realtime.infrastructure.ws.transport import WebSocketTransport
from chat_realtime.services.call_session import CallCoordinator
from chat_realtime.services.connection_manager import ConnectionManager
from chat_realtime.services.message_synchronizer import MessageSynchronizer
from chat_realtime.services.presence_tracker import PresenceTracker

logger = logging.getLogger(__name__)


@dataclass
class RealtimeClient:
    connection: ConnectionManager
    presence: PresenceTracker
    messages: MessageSynchronizer
    calls: CallCoordinator
    token_provider: TokenProvider

    async def start(self, identity: str) -> None:
        await self.connection.connect(identity, self.token_provider())

    async def close(self) -> None:
        if self.calls.busy:
            await self.calls.hang_up()
        self.calls.close()
        self.messages.close()
        self.presence.close()
        await self.connection.disconnect()


def create_client(
    token_provider: TokenProvider,
    *,
    config: Settings = settings,
    transport: Transport | None = None,
    history: HistoryApi | None = None,
    media: MediaSource | None = None,
    alerts: AlertSink | None = None,
    peer_factory: PeerConnectionFactory | None = None,
    scheduler: Scheduler | None = None,
) -> RealtimeClient:
    """Build a client; pass adapters to override the network or device defaults.

    Without ``peer_factory`` the aiortc adapters are used (``rtc`` extra).
    """
    scheduler = scheduler or LoopScheduler()
    connection = ConnectionManager(
        transport or WebSocketTransport(
            config.SERVER_WS_URL,
            connect_timeout=config.CONNECT_TIMEOUT,
            heartbeat=config.WS_HEARTBEAT_SECONDS,
        ),
        reconnect_policy(config.RECONNECT_ATTEMPTS, config.RECONNECT_DELAY, config.RECONNECT_DELAY_MAX),
    )

    if peer_factory is None:
        from chat_realtime.infrastructure.rtc.aiortc_peer import AiortcMediaSource, AiortcPeerFactory

        peer_factory = AiortcPeerFactory(config.ICE_SERVERS)
        media = media or AiortcMediaSource()

    alerts = alerts or LoggingAlertSink()
    presence = PresenceTracker(
        connection,
        scheduler,
        typing_idle=config.TYPING_IDLE_SECONDS,
        typing_expiry=config.TYPING_EXPIRY_SECONDS,
        resync_interval=config.PRESENCE_RESYNC_SECONDS,
    )
    messages = MessageSynchronizer(
        connection,
        history or ChatApiClient(config.API_URL, token_provider, lambda: connection.identity),
        alerts,
        scheduler,
        send_retry_policy(config.SEND_RETRY_DELAY),
        presence=presence,
    )
    calls = CallCoordinator(
        connection,
        peer_factory,
        media or NullMediaSource(),
        alerts,
        scheduler,
        ring_interval=config.RING_INTERVAL_SECONDS,
    )
    logger.debug("Real-time client wired for %s", config.SERVER_WS_URL)
    return RealtimeClient(
        connection=connection,
        presence=presence,
        messages=messages,
        calls=calls,
        token_provider=token_provider,
    )
